"""Core Note dataclass and its tagged frontmatter structure."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any

#: Frontmatter keys with a dedicated attribute on :class:`NoteMeta`.
KNOWN_KEYS = ("title", "tags", "date", "lastmod", "draft", "connected_to")


def slugify(title: str) -> str:
    """Derive a note id from *title*: lowercase, spaces become hyphens."""
    return title.strip().lower().replace(" ", "-")


def to_date(value: Any) -> date | None:  # noqa: ANN401
    """Best-effort conversion of a frontmatter value to a calendar date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def _as_str_list(value: Any) -> list[str]:  # noqa: ANN401
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None]
    return [str(value)]


def _is_set(value: Any) -> bool:  # noqa: ANN401
    return value is not None and value != [] and value != ""


@dataclass
class NoteMeta:
    """Frontmatter of a note: known fields plus a bag of extension keys.

    ``order`` remembers the key order read from the file so that
    :meth:`to_mapping` re-emits the block without reshuffling it.
    """

    title: str = ""
    tags: list[str] = field(default_factory=list)
    date: Any = None
    lastmod: Any = None
    draft: bool | None = None
    connected_to: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)
    order: list[str] = field(default_factory=list, repr=False, compare=False)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "NoteMeta":
        from kg.parser import coerce_tags

        title = data.get("title")
        return cls(
            title="" if title is None else str(title),
            tags=coerce_tags(data.get("tags")),
            date=data.get("date"),
            lastmod=data.get("lastmod"),
            draft=data.get("draft"),
            connected_to=_as_str_list(data.get("connected_to")),
            extra={k: v for k, v in data.items() if k not in KNOWN_KEYS},
            order=[str(k) for k in data],
        )

    def to_mapping(self) -> dict[str, Any]:
        known: dict[str, Any] = {
            "title": self.title,
            "tags": list(self.tags),
            "date": self.date,
            "lastmod": self.lastmod,
            "draft": self.draft,
            "connected_to": list(self.connected_to),
        }
        out: dict[str, Any] = {}
        for key in self.order:
            if key in known:
                out[key] = known[key]
            elif key in self.extra:
                out[key] = self.extra[key]
        for key, value in known.items():
            if key not in out and _is_set(value):
                out[key] = value
        for key, value in self.extra.items():
            if key not in out:
                out[key] = value
        return out


@dataclass
class Note:
    """A single markdown note in the corpus."""

    path: Path
    meta: NoteMeta
    #: Text after the frontmatter, without the leading ``# <title>`` heading
    body: str = ""

    @property
    def id(self) -> str:
        """Filesystem-stable identifier derived from the filename stem."""
        return self.path.stem

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def title(self) -> str:
        return self.meta.title

    @property
    def tags(self) -> list[str]:
        return self.meta.tags

    @property
    def connections(self) -> list[str]:
        return self.meta.connected_to

    @property
    def date(self) -> date | None:
        return to_date(self.meta.date)

    @property
    def last_modified(self) -> date | None:
        return to_date(self.meta.lastmod)

    @property
    def metadata(self) -> dict[str, Any]:
        return self.meta.to_mapping()

    def to_dict(self) -> dict[str, Any]:
        created = self.date
        return {
            "title": self.title,
            "filename": self.filename,
            "frontmatter": self.metadata,
            "content": self.body,
            "connections": list(self.connections),
            "tags": list(self.tags),
            "date": created.isoformat() if created else None,
        }

"""Frontmatter codec: parse and re-emit ``---`` / YAML / ``---`` / body notes.

Everything here except :func:`parse_note` is a pure function over text.
Rewriting operations (:func:`update_field`, :func:`set_field`,
:func:`normalize`) re-dump the metadata block and keep the bytes after the
closing delimiter untouched.
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

import yaml

from kg.errors import InvalidMetadata, MalformedDocument, ValidationError
from kg.note import Note, NoteMeta, slugify, to_date

# A delimiter is "---" alone on its line
_DELIMITER_RE = re.compile(r"^---[ \t]*\r?$", re.MULTILINE)
# [[Target]] or [[Target|Alias]]
_WIKILINK_RE = re.compile(r"\[\[([^\]|#]+)(?:[|#][^\]]*)?\]\]")
# [[Target#Anchor|Alias]] split into its parts
_WIKILINK_PARTS_RE = re.compile(r"\[\[([^\]|#]+)(#[^\]|]*)?(?:\|([^\]]*))?\]\]")
_HEADING_RE = re.compile(r"^#[ \t]+(.*?)[ \t]*$")

REQUIRED_FIELDS = ("title", "date")


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------


def _split(text: str) -> tuple[str, str]:
    """Return ``(metadata_text, raw_body)``; the body keeps its exact bytes."""
    segments = _DELIMITER_RE.split(text, maxsplit=2)
    if len(segments) != 3:
        raise MalformedDocument(
            f"expected two '---' delimiter lines, found {len(segments) - 1}",
            {"rule": "delimiter count"},
        )
    preamble, meta_text, raw_body = segments
    if preamble.replace("\ufeff", "").strip():
        raise MalformedDocument(
            "the metadata block must open the document",
            {"rule": "text before the first delimiter"},
        )
    return meta_text, raw_body


def _decode(meta_text: str) -> dict[str, Any]:
    # Out-of-range timestamps such as 2024-13-45 raise ValueError, not YAMLError
    try:
        meta = yaml.safe_load(meta_text)
    except (yaml.YAMLError, ValueError, TypeError) as exc:
        raise InvalidMetadata(f"frontmatter is not valid YAML: {exc}", exc) from exc
    if meta is None:
        return {}
    if not isinstance(meta, dict):
        raise InvalidMetadata(f"frontmatter must be a mapping, not {type(meta).__name__}")
    return {str(k): v for k, v in meta.items()}


def _dump(metadata: dict[str, Any]) -> str:
    return yaml.safe_dump(
        metadata,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


def _rewrite(metadata: dict[str, Any], raw_body: str) -> str:
    return f"---\n{_dump(metadata)}---{raw_body}"


def _trim_blank_lines(text: str) -> str:
    lines = text.splitlines()
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines)


def coerce_tags(value: Any) -> list[str]:  # noqa: ANN401
    """Normalise a tag list or a comma-separated tag string (de-duped, ordered)."""
    if value is None:
        return []
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = value
    else:
        items = [value]
    tags: list[str] = []
    for item in items:
        if item is None:
            continue
        tag = str(item).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def require_fields(
    metadata: dict[str, Any],
    fields: Iterable[str] = REQUIRED_FIELDS,
    path: Path | None = None,
) -> None:
    """Raise :class:`ValidationError` for the first missing or blank field."""
    for name in fields:
        value = metadata.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            details = {"path": path} if path is not None else {}
            raise ValidationError(f"missing required field: {name}", field=name, **details)


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


def parse_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split YAML front-matter from body text.

    Returns ``(metadata_dict, body)`` with the body trimmed of leading and
    trailing blank lines.
    """
    meta_text, raw_body = _split(content)
    return _decode(meta_text), _trim_blank_lines(raw_body)


def serialize(metadata: dict[str, Any], title: str, body: str) -> str:
    """Emit the metadata block, a blank line, a ``# title`` heading and *body*."""
    parts = [f"# {title}"]
    trimmed = _trim_blank_lines(body)
    if trimmed:
        parts.append(trimmed)
    return f"---\n{_dump(metadata)}---\n\n" + "\n\n".join(parts) + "\n"


def update_field(text: str, key: str, value: Any) -> str:  # noqa: ANN401
    """Append *value* under *key* if it holds a list, else set it to ``[value]``."""
    meta_text, raw_body = _split(text)
    metadata = _decode(meta_text)
    current = metadata.get(key)
    if isinstance(current, list):
        metadata[key] = [*current, value]
    else:
        metadata[key] = [value]
    return _rewrite(metadata, raw_body)


def set_field(text: str, key: str, value: Any) -> str:  # noqa: ANN401
    """Replace (or add) *key* with *value*."""
    meta_text, raw_body = _split(text)
    metadata = _decode(meta_text)
    metadata[key] = value
    return _rewrite(metadata, raw_body)


def normalize(text: str) -> str:
    """Canonicalise dates to ``YYYY-MM-DD`` and lower-case tags."""
    meta_text, raw_body = _split(text)
    metadata = _decode(meta_text)
    for key in ("date", "lastmod"):
        value = metadata.get(key)
        if isinstance(value, (str, datetime)):
            parsed = to_date(value)
            if parsed is not None:
                metadata[key] = parsed
    if "tags" in metadata:
        metadata["tags"] = coerce_tags([t.lower() for t in coerce_tags(metadata["tags"])])
    return _rewrite(metadata, raw_body)


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


def strip_title_heading(body: str, title: str) -> str:
    """Drop a leading ``# <title>`` heading (it is re-emitted on serialization)."""
    lines = body.split("\n")
    m = _HEADING_RE.match(lines[0]) if lines else None
    if m and m.group(1) == title.strip():
        return _trim_blank_lines("\n".join(lines[1:]))
    return body


def parse_note_text(text: str, path: Path) -> Note:
    """Build a :class:`Note` from the full text of a note file."""
    metadata, body = parse_frontmatter(text)
    meta = NoteMeta.from_mapping(metadata)
    if not meta.title.strip():
        raise ValidationError("missing required field: title", field="title", path=path)
    return Note(path=Path(path), meta=meta, body=strip_title_heading(body, meta.title))


def serialize_note(note: Note) -> str:
    return serialize(note.metadata, note.title, note.body)


def parse_note(path: Path) -> Note:
    """Read a ``.md`` file and return a fully-populated :class:`Note`."""
    return parse_note_text(Path(path).read_text(encoding="utf-8"), Path(path))


# ---------------------------------------------------------------------------
# Wikilinks
# ---------------------------------------------------------------------------


def parse_wikilinks(text: str) -> list[str]:
    """Return all ``[[WikiLink]]`` targets found in *text* (de-duped, ordered)."""
    seen: set[str] = set()
    result: list[str] = []
    for m in _WIKILINK_RE.finditer(text):
        target = m.group(1).strip()
        if target not in seen:
            seen.add(target)
            result.append(target)
    return result


def rewrite_wikilinks(text: str, notes_dir: Path) -> str:
    """Turn ``[[Target#Anchor|Alias]]`` into a markdown link into *notes_dir*."""

    def _link(m: re.Match[str]) -> str:
        target = m.group(1).strip()
        anchor = m.group(2) or ""
        label = (m.group(3) or "").strip() or target
        href = (Path(notes_dir) / f"{slugify(target)}.md").as_posix()
        if anchor:
            href += "#" + slugify(anchor[1:])
        if " " in href:
            href = f"<{href}>"
        return f"[{label}]({href})"

    return _WIKILINK_PARTS_RE.sub(_link, text)


def localize_links(text: str, notes_dir: Path) -> str:
    """Rewrite the wikilinks in a note's body so they resolve inside *notes_dir*."""
    meta_text, raw_body = _split(text)
    return _rewrite(_decode(meta_text), rewrite_wikilinks(raw_body, notes_dir))

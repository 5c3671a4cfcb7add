"""Note store: loads a notes directory into a :class:`Corpus` and writes notes.

Loading is a bulk operation and collects per-file failures; every other
operation here touches a single note and fails fast.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from kg import parser
from kg.errors import ConflictError, KGError, PerFileError, UnknownNote, ValidationError
from kg.note import Note, slugify

logger = logging.getLogger(__name__)

NOTE_SUFFIX = ".md"
SORT_KEYS = ("title", "date", "lastmod")


# ---------------------------------------------------------------------------
# Corpus
# ---------------------------------------------------------------------------


class Corpus:
    """All notes loaded from one directory at one point in time."""

    def __init__(self, directory: Path, notes: Iterable[Note] = ()) -> None:
        self.directory = Path(directory)
        self.notes: dict[str, Note] = {}
        for note in notes:
            self.add(note)

    def add(self, note: Note) -> None:
        if note.id in self.notes:
            raise ConflictError(note.id, note.path)
        self.notes[note.id] = note

    def get(self, note_id: str) -> Note:
        try:
            return self.notes[note_id]
        except KeyError:
            raise UnknownNote(note_id) from None

    def with_tag(self, tag: str) -> list[Note]:
        return [n for n in self.notes.values() if tag in n.tags]

    def sorted_by(self, key: str = "title", *, reverse: bool = False) -> list[Note]:
        """Notes ordered by ``title``, ``date`` or ``lastmod``.

        The sort is stable, so equal keys keep load order. Notes without the
        requested date always come last, whichever the direction.
        """
        if key == "title":
            return sorted(self.notes.values(), key=lambda n: n.title, reverse=reverse)
        if key not in SORT_KEYS:
            raise ValidationError(f"cannot sort notes by {key!r}", allowed=", ".join(SORT_KEYS))
        value_of = (lambda n: n.date) if key == "date" else (lambda n: n.last_modified)
        dated = [n for n in self.notes.values() if value_of(n) is not None]
        undated = [n for n in self.notes.values() if value_of(n) is None]
        return sorted(dated, key=value_of, reverse=reverse) + undated

    def __contains__(self, note_id: object) -> bool:
        return note_id in self.notes

    def __iter__(self) -> Iterator[Note]:
        return iter(self.notes.values())

    def __len__(self) -> int:
        return len(self.notes)


@dataclass
class LoadResult:
    corpus: Corpus
    errors: list[PerFileError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class BulkResult:
    """Outcome of a corpus-wide rewrite: files changed plus collected failures."""

    changed: list[Path] = field(default_factory=list)
    errors: list[PerFileError] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def iter_note_paths(directory: Path) -> list[Path]:
    """Every ``*.md`` file below *directory*, hidden directories skipped, sorted."""
    paths: list[Path] = []
    for root, dirs, files in os.walk(directory):
        dirs[:] = [d for d in dirs if not d.startswith(".")]
        paths.extend(Path(root) / name for name in files if name.endswith(NOTE_SUFFIX))
    return sorted(paths)


def _parse_one(path: Path) -> Note | PerFileError:
    try:
        return parser.parse_note(path)
    except (KGError, OSError, UnicodeDecodeError) as exc:
        return PerFileError(path, exc)


def load_corpus(directory: Path, *, workers: int | None = None) -> LoadResult:
    """Parse every note under *directory*; one bad file never aborts the load."""
    directory = Path(directory)
    if not directory.is_dir():
        raise NotADirectoryError(f"notes directory not found: {directory}")

    paths = iter_note_paths(directory)
    if workers and workers > 1 and len(paths) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            parsed = list(pool.map(_parse_one, paths))
    else:
        parsed = [_parse_one(p) for p in paths]

    result = LoadResult(corpus=Corpus(directory))
    for path, item in zip(paths, parsed):
        if isinstance(item, Note):
            try:
                result.corpus.add(item)
            except ConflictError as exc:
                item = PerFileError(path, exc)
        if isinstance(item, PerFileError):
            logger.warning("Skipping note: %s", item)
            result.errors.append(item)

    logger.debug("Loaded %d notes from %s (%d errors)", len(result.corpus), directory, len(result.errors))
    return result


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class NoteStore:
    """Owns a notes directory: loads the corpus and rewrites individual notes."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def load(self, workers: int | None = None) -> LoadResult:
        return load_corpus(self.directory, workers=workers)

    def _locate(self, note_id: str) -> Path | None:
        """File holding *note_id* anywhere below the directory; first in load order wins."""
        if not note_id or "/" in note_id or "\\" in note_id:
            return None
        name = f"{note_id}{NOTE_SUFFIX}"
        if not self.directory.is_dir():
            return None
        for path in iter_note_paths(self.directory):
            if path.name == name:
                return path
        return None

    def path_for(self, note_id: str) -> Path:
        """Existing file of *note_id*, or where a new top-level note would go."""
        return self._locate(note_id) or self.directory / f"{note_id}{NOTE_SUFFIX}"

    def exists(self, note_id: str) -> bool:
        return self._locate(note_id) is not None

    def resolve(self, ref: str) -> str:
        """Accept a note id or a title and return the id, or raise :class:`UnknownNote`."""
        for candidate in (ref, slugify(ref)):
            if candidate and self.exists(candidate):
                return candidate
        raise UnknownNote(ref)

    def read(self, note_id: str) -> Note:
        path = self._locate(note_id)
        if path is None:
            raise UnknownNote(note_id)
        return parser.parse_note(path)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _new_id(self, title: str) -> str:
        if not title or not title.strip():
            raise ValidationError("missing required field: title", field="title")
        if "\n" in title or "\r" in title:
            raise ValidationError("title must be a single line", field="title")
        note_id = slugify(title)
        if note_id in {"", ".", ".."} or "/" in note_id or "\\" in note_id:
            raise ValidationError(f"title does not give a usable id: {note_id!r}", field="title")
        if self.exists(note_id):
            raise ConflictError(note_id, self.path_for(note_id))
        return note_id

    def create(
        self,
        title: str,
        tags: Iterable[str] | str = (),
        body: str = "",
        *,
        today: date | None = None,
        extra: dict[str, Any] | None = None,
    ) -> str:
        """Write a new note with generated frontmatter and return its id.

        *tags* and *body* may come from an external suggester; they are
        validated exactly like typed input.
        """
        note_id = self._new_id(title)
        today = today or date.today()
        metadata: dict[str, Any] = {
            "title": title.strip(),
            "tags": parser.coerce_tags(tags),
            "date": today,
            "lastmod": today,
            "draft": False,
        }
        for key, value in (extra or {}).items():
            metadata.setdefault(key, value)

        path = self.path_for(note_id)
        self.directory.mkdir(parents=True, exist_ok=True)
        with path.open("x", encoding="utf-8") as fh:
            fh.write(parser.serialize(metadata, title.strip(), body))
        logger.info("Created note %s at %s", note_id, path)
        return note_id

    def import_external(self, source: Path) -> str:
        """Copy an external markdown file into the store, rewriting its wikilinks."""
        source = Path(source)
        text = source.read_text(encoding="utf-8")
        metadata, _ = parser.parse_frontmatter(text)
        parser.require_fields(metadata, path=source)
        note_id = self._new_id(str(metadata["title"]))

        content = parser.localize_links(text, self.directory)
        path = self.path_for(note_id)
        self.directory.mkdir(parents=True, exist_ok=True)
        with path.open("x", encoding="utf-8") as fh:
            fh.write(content)
        logger.info("Imported %s as note %s", source, note_id)
        return note_id

    # ------------------------------------------------------------------
    # Single-note rewrites
    # ------------------------------------------------------------------

    def edit(self, note_id: str, text: str) -> Note:
        """Replace a note's full text after validating it.

        The id stays the filename stem even when the edited title changes.
        """
        path = self.path_for(note_id)
        if not path.is_file():
            raise UnknownNote(note_id)
        metadata, _ = parser.parse_frontmatter(text)
        parser.require_fields(metadata, path=path)
        note = parser.parse_note_text(text, path)
        path.write_text(text, encoding="utf-8")
        logger.info("Edited note %s", note_id)
        return note

    def _rewrite_note(self, note_id: str, transform: Callable[[str], str]) -> bool:
        path = self.path_for(note_id)
        if not path.is_file():
            raise UnknownNote(note_id)
        before = path.read_text(encoding="utf-8")
        after = transform(before)
        if after == before:
            return False
        path.write_text(after, encoding="utf-8")
        return True

    def update_field(self, note_id: str, key: str, value: Any) -> None:  # noqa: ANN401
        """Append *value* to the list under *key* (see :func:`parser.update_field`)."""
        self._rewrite_note(note_id, lambda text: parser.update_field(text, key, value))
        logger.info("Appended %s=%r to note %s", key, value, note_id)

    def set_field(self, note_id: str, key: str, value: Any) -> None:  # noqa: ANN401
        self._rewrite_note(note_id, lambda text: parser.set_field(text, key, value))
        logger.info("Set %s=%r on note %s", key, value, note_id)

    # ------------------------------------------------------------------
    # Bulk rewrites
    # ------------------------------------------------------------------

    def _rewrite_all(self, transform: Callable[[str], str]) -> BulkResult:
        result = BulkResult()
        for path in iter_note_paths(self.directory):
            try:
                before = path.read_text(encoding="utf-8")
                after = transform(before)
                if after != before:
                    path.write_text(after, encoding="utf-8")
                    result.changed.append(path)
            except (KGError, OSError, UnicodeDecodeError) as exc:
                error = PerFileError(path, exc)
                logger.warning("Skipping note: %s", error)
                result.errors.append(error)
        return result

    def normalize_all(self) -> BulkResult:
        """Normalise the frontmatter of every note (idempotent)."""
        result = self._rewrite_all(parser.normalize)
        logger.info("Normalized %d notes (%d errors)", len(result.changed), len(result.errors))
        return result

    def set_field_all(self, key: str, value: Any) -> BulkResult:  # noqa: ANN401
        result = self._rewrite_all(lambda text: parser.set_field(text, key, value))
        logger.info("Set %s on %d notes (%d errors)", key, len(result.changed), len(result.errors))
        return result

"""Exception hierarchy for the knowledge-graph core.

Every failure carries a human-readable message plus a ``details`` mapping
naming the offending note id / path and the violated rule, so callers can
report it without parsing the message.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class KGError(Exception):
    """Base class for all knowledge-graph errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": {k: str(v) for k, v in self.details.items()},
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


# ---------------------------------------------------------------------------
# Document format
# ---------------------------------------------------------------------------


class MalformedDocument(KGError):
    """The text does not have the ``---`` / metadata / ``---`` / body shape."""


class InvalidMetadata(KGError):
    """The frontmatter block could not be decoded into a mapping."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message, {"cause": cause} if cause else None)
        self.cause = cause


class ValidationError(KGError):
    """A required field is missing or a value is not acceptable."""

    def __init__(self, message: str, field: str | None = None, **details: Any) -> None:
        if field:
            details = {"field": field, **details}
        super().__init__(message, details)
        self.field = field


# ---------------------------------------------------------------------------
# Corpus
# ---------------------------------------------------------------------------


class ConflictError(KGError):
    """Two notes would resolve to the same id."""

    def __init__(self, note_id: str, path: Path | None = None) -> None:
        details: dict[str, Any] = {"note_id": note_id}
        if path is not None:
            details["path"] = path
        super().__init__(f"A note with id '{note_id}' already exists", details)
        self.note_id = note_id
        self.path = path


class UnknownNote(KGError):
    """An operation referenced a note id that is not in the corpus."""

    def __init__(self, note_id: str) -> None:
        super().__init__(f"Note '{note_id}' does not exist", {"note_id": note_id})
        self.note_id = note_id


class PerFileError(KGError):
    """A failure attached to one file, collected during a bulk operation."""

    def __init__(self, path: Path, cause: Exception) -> None:
        super().__init__(f"{path}: {cause}", {"rule": type(cause).__name__})
        self.path = path
        self.cause = cause

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class IndexUnavailable(KGError):
    """The search index cannot be opened, built, or is not ready."""


class BuildCancelled(IndexUnavailable):
    """An index build was cancelled before it finished."""


class QueryError(KGError):
    """A search query is empty or syntactically unusable."""

"""kg — knowledge-graph core over a directory of markdown notes."""

from kg.errors import (
    ConflictError,
    IndexUnavailable,
    InvalidMetadata,
    KGError,
    MalformedDocument,
    PerFileError,
    QueryError,
    UnknownNote,
    ValidationError,
)
from kg.graph import ConnectionGraph, connect, reconcile
from kg.note import Note, NoteMeta, slugify
from kg.parser import parse_frontmatter, parse_note, serialize, update_field
from kg.search import SearchIndex, open_index
from kg.stats import CorpusStats
from kg.store import Corpus, NoteStore, load_corpus

__all__ = [
    "Note",
    "NoteMeta",
    "slugify",
    "parse_frontmatter",
    "parse_note",
    "serialize",
    "update_field",
    "Corpus",
    "NoteStore",
    "load_corpus",
    "ConnectionGraph",
    "connect",
    "reconcile",
    "SearchIndex",
    "open_index",
    "CorpusStats",
    "KGError",
    "MalformedDocument",
    "InvalidMetadata",
    "ValidationError",
    "ConflictError",
    "UnknownNote",
    "PerFileError",
    "IndexUnavailable",
    "QueryError",
]

"""Full-text search over the corpus: an inverted index plus a boolean query engine.

The index lives in a DuckDB database (a file, or ``:memory:``) with a
``documents`` table and a ``postings`` table of ``(term, doc_id, field, tf)``
rows. It is a derived cache: every build replaces it wholesale.

Usage::

    index = open_index(settings.index_path, lambda: store.load().corpus)
    for hit in index.search("+python -java parsing"):
        print(hit.id, hit.score, hit.fragments.get("content"))

Query language
--------------
Whitespace-separated terms. ``+term`` must match, ``-term`` must not match,
a bare ``term`` should match (at least one bare term has to match when there
are any). A query made only of ``-term`` exclusions matches every document
that is not excluded.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Union

import duckdb
import polars as pl

from kg.errors import BuildCancelled, IndexUnavailable, QueryError

if TYPE_CHECKING:
    from kg.note import Note
    from kg.store import Corpus

logger = logging.getLogger(__name__)

CorpusSource = Union["Corpus", Callable[[], "Corpus"]]

MARK_OPEN = "<mark>"
MARK_CLOSE = "</mark>"
FIELD_BOOSTS = {"title": 2.0, "tags": 1.5, "content": 1.0}
TEXT_FIELDS = ("title", "content")
MAX_FRAGMENTS = 3

_TOKEN_RE = re.compile(r"\w+")
_MARK_RE = re.compile(re.escape(MARK_OPEN) + r"(.*?)" + re.escape(MARK_CLOSE), re.DOTALL)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS documents (
        id      VARCHAR,
        title   VARCHAR,
        tags    VARCHAR[],
        content VARCHAR
    );
    CREATE TABLE IF NOT EXISTS postings (
        term    VARCHAR,
        doc_id  VARCHAR,
        field   VARCHAR,
        tf      INTEGER
    );
"""


class IndexState(Enum):
    EMPTY = "empty"
    BUILDING = "building"
    READY = "ready"


def tokenize(text: str) -> list[str]:
    """Lower-cased word tokens of *text*."""
    return _TOKEN_RE.findall(text.lower())


# ---------------------------------------------------------------------------
# Documents, queries, hits
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SearchDocument:
    """Per-note projection fed to the index."""

    id: str
    title: str
    tags: tuple[str, ...]
    body: str

    @classmethod
    def from_note(cls, note: "Note") -> "SearchDocument":
        return cls(id=note.id, title=note.title, tags=tuple(note.tags), body=note.body)

    def postings(self) -> list[tuple[str, str, str, int]]:
        rows: list[tuple[str, str, str, int]] = []
        for field_name, text in (("title", self.title), ("content", self.body)):
            for term, tf in Counter(tokenize(text)).items():
                rows.append((term, self.id, field_name, tf))
        for term, tf in Counter(t.lower() for t in self.tags).items():
            rows.append((term, self.id, "tags", tf))
        return rows


@dataclass
class ParsedQuery:
    must: list[str] = field(default_factory=list)
    must_not: list[str] = field(default_factory=list)
    should: list[str] = field(default_factory=list)

    @property
    def positive(self) -> list[str]:
        return self.must + self.should


def parse_query(query: str) -> ParsedQuery:
    """Split *query* into must / must-not / should terms (lower-cased)."""
    terms = query.split()
    if not terms:
        raise QueryError("the query is empty")
    parsed = ParsedQuery()
    for raw in terms:
        if raw[0] == "+":
            bucket, text = parsed.must, raw[1:]
        elif raw[0] == "-":
            bucket, text = parsed.must_not, raw[1:]
        else:
            bucket, text = parsed.should, raw
        if not text:
            raise QueryError(f"operator '{raw}' is not followed by a term", {"term": raw})
        text = text.lower()
        if text not in bucket:
            bucket.append(text)
    return parsed


@dataclass
class Hit:
    id: str
    title: str
    tags: list[str]
    score: float
    #: field name -> excerpts with matches wrapped in <mark>…</mark>
    fragments: dict[str, list[str]] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Highlighting
# ---------------------------------------------------------------------------


def highlight(text: str, terms: list[str], context: int = 50, limit: int = MAX_FRAGMENTS) -> list[str]:
    """Excerpts of *text* around each match of *terms*, matches marked.

    Windows reach *context* characters either side of a match; overlapping
    windows are merged.
    """
    tokens = sorted({t for t in terms if t}, key=len, reverse=True)
    if not tokens or not text:
        return []
    pattern = re.compile("|".join(re.escape(t) for t in tokens), re.IGNORECASE)

    windows: list[list] = []
    for m in pattern.finditer(text):
        start, end = m.span()
        lo, hi = max(0, start - context), min(len(text), end + context)
        if windows and lo <= windows[-1][1]:
            windows[-1][1] = max(windows[-1][1], hi)
            windows[-1][2].append((start, end))
        else:
            windows.append([lo, hi, [(start, end)]])

    fragments: list[str] = []
    for lo, hi, spans in windows[:limit]:
        parts: list[str] = []
        cursor = lo
        for start, end in spans:
            parts.append(text[cursor:start])
            parts.append(f"{MARK_OPEN}{text[start:end]}{MARK_CLOSE}")
            cursor = end
        parts.append(text[cursor:hi])
        fragments.append("".join(parts))
    return fragments


def _highlight_terms(text: str, matched: dict[str, dict[str, float]], field_name: str) -> list[str]:
    """What to mark in one field: only terms that matched it, literally when they contain punctuation."""
    lowered = text.lower()
    terms: list[str] = []
    for term, fields in matched.items():
        if field_name not in fields:
            continue
        pieces = tokenize(term)
        if pieces != [term] and term in lowered:
            terms.append(term)
        else:
            terms.extend(pieces)
    return terms


def strip_marks(text: str) -> str:
    return _MARK_RE.sub(r"\1", text)


def render_marks(text: str, render: Callable[[str], str]) -> str:
    """Replace every marked span with ``render(span)`` (e.g. terminal colours)."""
    return _MARK_RE.sub(lambda m: render(m.group(1)), text)


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------


class SearchIndex:
    """Handle on one search index; builds are serialised by the handle's lock."""

    def __init__(self, path: Path | str = ":memory:", *, context: int = 50) -> None:
        self.path = str(path)
        self.context = context
        self.state = IndexState.EMPTY
        self._lock = threading.Lock()
        self._generation = 0
        self._last_error: BaseException | None = None
        self.conn: duckdb.DuckDBPyConnection = self._open()

    def _open(self) -> duckdb.DuckDBPyConnection:
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            conn = duckdb.connect(self.path)
            conn.execute(_SCHEMA)
        except (duckdb.Error, OSError) as exc:
            raise IndexUnavailable(
                f"cannot open search index: {exc}", {"path": self.path}
            ) from exc
        return conn

    # ------------------------------------------------------------------
    # Build / refresh
    # ------------------------------------------------------------------

    def build(self, source: CorpusSource, cancel: threading.Event | None = None) -> "SearchIndex":
        """(Re-)index every note; on failure the index is left empty and the error raised."""
        with self._lock:
            self._build(source, cancel)
        return self

    def ensure_ready(self, source: CorpusSource, cancel: threading.Event | None = None) -> "SearchIndex":
        """Build the index unless it is already ready.

        Concurrent callers wait for the single build in progress. If that
        build fails they get its error rather than starting another one.
        """
        if self.state is IndexState.READY:
            return self
        generation = self._generation
        with self._lock:
            if self.state is IndexState.READY:
                return self
            if self._generation != generation and self._last_error is not None:
                raise IndexUnavailable(
                    f"search index build failed: {self._last_error}", {"path": self.path}
                ) from self._last_error
            self._build(source, cancel)
        return self

    def invalidate(self) -> None:
        """Drop the indexed content; the next :meth:`ensure_ready` rebuilds."""
        with self._lock:
            self._clear()
            self.state = IndexState.EMPTY

    def _clear(self) -> None:
        cur = self.conn.cursor()
        try:
            cur.execute("DELETE FROM postings")
            cur.execute("DELETE FROM documents")
        finally:
            cur.close()

    def _build(self, source: CorpusSource, cancel: threading.Event | None) -> None:
        self.state = IndexState.BUILDING
        cur = self.conn.cursor()
        try:
            corpus = source() if callable(source) else source
            documents: list[dict] = []
            postings: list[tuple[str, str, str, int]] = []
            for note in corpus:
                if cancel is not None and cancel.is_set():
                    raise BuildCancelled("index build cancelled", {"indexed": len(documents)})
                doc = SearchDocument.from_note(note)
                documents.append({"id": doc.id, "title": doc.title, "tags": list(doc.tags), "content": doc.body})
                postings.extend(doc.postings())

            docs_df = pl.DataFrame(
                documents,
                schema={"id": pl.Utf8, "title": pl.Utf8, "tags": pl.List(pl.Utf8), "content": pl.Utf8},
            )
            postings_df = pl.DataFrame(
                postings,
                schema={"term": pl.Utf8, "doc_id": pl.Utf8, "field": pl.Utf8, "tf": pl.Int32},
                orient="row",
            )
            cur.execute("BEGIN TRANSACTION")
            cur.execute("DELETE FROM postings")
            cur.execute("DELETE FROM documents")
            cur.register("new_documents", docs_df)
            cur.register("new_postings", postings_df)
            cur.execute("INSERT INTO documents SELECT id, title, tags, content FROM new_documents")
            cur.execute("INSERT INTO postings SELECT term, doc_id, field, tf FROM new_postings")
            cur.execute("COMMIT")
        except BaseException as exc:
            self._abort(cur)
            self.state = IndexState.EMPTY
            self._last_error = exc
            self._generation += 1
            logger.warning("Search index build failed: %s", exc)
            if isinstance(exc, duckdb.Error):
                raise IndexUnavailable(f"search index build failed: {exc}", {"path": self.path}) from exc
            raise
        finally:
            cur.close()

        self.state = IndexState.READY
        self._last_error = None
        self._generation += 1
        logger.debug("Indexed %d notes (%d postings) into %s", len(documents), len(postings), self.path)

    def _abort(self, cur: duckdb.DuckDBPyConnection) -> None:
        try:
            cur.execute("ROLLBACK")
        except duckdb.Error as exc:
            logger.debug("Nothing to roll back: %s", exc)
        self._clear()

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        cur = self.conn.cursor()
        try:
            return cur.execute("SELECT count(*) FROM documents").fetchone()[0]
        finally:
            cur.close()

    def _match(self, cur: duckdb.DuckDBPyConnection, term: str) -> dict[str, dict[str, float]]:
        """doc id -> field -> summed term frequency, for docs where *term* matches."""
        matched: dict[str, dict[str, float]] = {}
        rows = cur.execute(
            "SELECT doc_id, SUM(tf) FROM postings WHERE field = 'tags' AND term = ? GROUP BY doc_id",
            [term],
        ).fetchall()
        for doc_id, tf in rows:
            matched.setdefault(doc_id, {})["tags"] = float(tf)

        tokens = tokenize(term)
        if not tokens:
            return matched
        for field_name in TEXT_FIELDS:
            per_token = [
                dict(
                    cur.execute(
                        "SELECT doc_id, SUM(tf) FROM postings "
                        "WHERE field = ? AND contains(term, ?) GROUP BY doc_id",
                        [field_name, token],
                    ).fetchall()
                )
                for token in tokens
            ]
            common = set(per_token[0]).intersection(*per_token[1:])
            for doc_id in common:
                matched.setdefault(doc_id, {})[field_name] = float(sum(d[doc_id] for d in per_token))
        return matched

    def search(self, query: str, *, limit: int | None = None) -> list[Hit]:
        """Evaluate *query*; hits ranked by score, ties broken by id."""
        if self.state is not IndexState.READY:
            raise IndexUnavailable("search index is not ready", {"path": self.path, "state": self.state.value})
        parsed = parse_query(query)

        cur = self.conn.cursor()
        try:
            matches = {
                term: self._match(cur, term)
                for term in dict.fromkeys(parsed.must + parsed.must_not + parsed.should)
            }
            if parsed.should:
                candidates: set[str] = set().union(*(matches[t].keys() for t in parsed.should))
            elif parsed.must:
                candidates = set(matches[parsed.must[0]])
            else:
                candidates = {row[0] for row in cur.execute("SELECT id FROM documents").fetchall()}
            for term in parsed.must:
                candidates &= set(matches[term])
            for term in parsed.must_not:
                candidates -= set(matches[term])

            scores = {
                doc_id: sum(
                    tf * FIELD_BOOSTS[f]
                    for term in parsed.positive
                    for f, tf in matches[term].get(doc_id, {}).items()
                )
                for doc_id in candidates
            }
            ranked = sorted(candidates, key=lambda d: (-scores[d], d))
            if limit is not None:
                ranked = ranked[:limit]

            rows = []
            if ranked:
                rows = cur.execute(
                    "SELECT id, title, tags, content FROM documents WHERE list_contains(?, id)",
                    [ranked],
                ).fetchall()
        except duckdb.Error as exc:
            raise IndexUnavailable(f"search failed: {exc}", {"path": self.path}) from exc
        finally:
            cur.close()

        by_id = {row[0]: row for row in rows}
        hits = [
            self._hit(by_id[d], scores[d], {t: matches[t].get(d, {}) for t in parsed.positive})
            for d in ranked
            if d in by_id
        ]
        logger.debug("Query %r matched %d documents", query, len(hits))
        return hits

    def _hit(self, row: tuple, score: float, matched: dict[str, dict[str, float]]) -> Hit:
        """Build a hit; *matched* maps each positive term to the fields it matched here."""
        doc_id, title, tags, content = row
        tags = list(tags or [])
        fragments: dict[str, list[str]] = {}
        for field_name, text in (("title", title or ""), ("content", content or "")):
            excerpts = highlight(text, _highlight_terms(text, matched, field_name), self.context)
            if excerpts:
                fragments[field_name] = excerpts
        tag_terms = {term for term, fields in matched.items() if "tags" in fields}
        marked_tags = [f"{MARK_OPEN}{t}{MARK_CLOSE}" for t in tags if t.lower() in tag_terms]
        if marked_tags:
            fragments["tags"] = marked_tags
        return Hit(id=doc_id, title=title, tags=tags, score=score, fragments=fragments)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "SearchIndex":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def open_index(path: Path | str, source: CorpusSource, *, context: int = 50) -> SearchIndex:
    """Open the index at *path* and make sure it is built from *source*."""
    return SearchIndex(path, context=context).ensure_ready(source)

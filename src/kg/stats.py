"""CorpusStats — aggregate statistics over a loaded corpus.

Uses DuckDB (in-memory) as a query engine over the notes' frontmatter,
body text, tags and connections. Tabular results come back as :mod:`polars`
DataFrames; the headline numbers as plain dicts.

Usage::

    with CorpusStats(corpus) as stats:
        stats.tag_distribution()     # {"python": 12, "rust": 3, ...}
        stats.per_month_counts()     # {"2024-01": 4, "2024-02": 9}
        stats.average_body_length()  # 0.0 for an empty corpus
        stats.top_connected()        # [("alpha", 7), ("beta", 5), ...]

        # Free-form SQL over the ``notes`` table
        df = stats.query("SELECT id, title FROM notes WHERE draft")
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import duckdb
import polars as pl

from kg.graph import ConnectionGraph

if TYPE_CHECKING:
    from kg.store import Corpus


class CorpusStats:
    """In-memory DuckDB database over one corpus."""

    def __init__(self, corpus: "Corpus", graph: ConnectionGraph | None = None) -> None:
        self.conn: duckdb.DuckDBPyConnection = duckdb.connect(":memory:")
        self.refresh(corpus, graph)

    # ------------------------------------------------------------------
    # Build / refresh
    # ------------------------------------------------------------------

    def refresh(self, corpus: "Corpus", graph: ConnectionGraph | None = None) -> None:
        """(Re-)populate the database from *corpus* (call after reloading it)."""
        self.corpus = corpus
        self.graph = graph if graph is not None else ConnectionGraph(corpus)
        self._create_schema()
        self._load_notes()

    def _create_schema(self) -> None:
        self.conn.execute("""
            CREATE OR REPLACE TABLE notes (
                id          VARCHAR,
                position    INTEGER,
                title       VARCHAR,
                body        TEXT,
                tags        VARCHAR[],
                connections VARCHAR[],
                date        DATE,
                lastmod     DATE,
                draft       BOOLEAN,
                frontmatter JSON
            )
        """)

    def _load_notes(self) -> None:
        rows = [
            (
                note.id,
                position,
                note.title,
                note.body,
                list(note.tags),
                list(note.connections),
                note.date,
                note.last_modified,
                bool(note.meta.draft),
                json.dumps(note.metadata, default=str),
            )
            for position, note in enumerate(self.corpus)
        ]
        if rows:
            self.conn.executemany("INSERT INTO notes VALUES (?,?,?,?,?,?,?,?,?,?)", rows)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def query(self, sql: str) -> pl.DataFrame:
        """Run a raw SQL query and return a Polars DataFrame."""
        return self.conn.execute(sql).pl()

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    _TAG_COUNTS_SQL = """
        SELECT tag, COUNT(*) AS note_count
        FROM (SELECT unnest(tags) AS tag FROM notes)
        GROUP BY tag
        ORDER BY note_count DESC, tag
    """

    def tag_counts(self) -> pl.DataFrame:
        """Return a tag → count table sorted by frequency."""
        return self.conn.execute(self._TAG_COUNTS_SQL).pl()

    def tag_distribution(self) -> dict[str, int]:
        return {tag: int(count) for tag, count in self.conn.execute(self._TAG_COUNTS_SQL).fetchall()}

    def per_month_counts(self) -> dict[str, int]:
        """``"YYYY-MM"`` → number of notes dated in that month (undated notes skipped)."""
        rows = self.conn.execute("""
            SELECT strftime(date, '%Y-%m') AS month, COUNT(*) AS note_count
            FROM notes
            WHERE date IS NOT NULL
            GROUP BY month
            ORDER BY month
        """).fetchall()
        return {month: int(count) for month, count in rows}

    def average_body_length(self) -> float:
        """Mean body length in characters; ``0.0`` when the corpus is empty."""
        (avg,) = self.conn.execute("SELECT avg(length(body)) FROM notes").fetchone()
        return float(avg) if avg is not None else 0.0

    def top_connected(self, k: int = 5) -> list[tuple[str, int]]:
        """``(id, out_degree)`` for the *k* most connected notes."""
        return [(note.id, len(note.connections)) for note in self.graph.most_connected(k)]

    def summary(self) -> dict[str, Any]:
        return {
            "total_notes": len(self.corpus),
            "tag_distribution": self.tag_distribution(),
            "most_connected": self.top_connected(),
            "notes_per_month": self.per_month_counts(),
            "average_length": self.average_body_length(),
            "dangling_connections": len(self.graph.dangling()),
            "one_sided_connections": len(self.graph.asymmetric()),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "CorpusStats":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

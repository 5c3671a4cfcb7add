"""JSON and CSV exports of a loaded corpus."""

from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING, Any

import polars as pl

if TYPE_CHECKING:
    from kg.store import Corpus

NODE_COLUMNS = ("ID", "Title", "Filename", "Tags", "Date", "LastMod")
EDGE_COLUMNS = ("Source", "Target")


def _json_default(value: Any) -> Any:  # noqa: ANN401
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def to_json(corpus: "Corpus") -> str:
    """Array of ``{title, filename, frontmatter, content, connections, tags, date}``."""
    return json.dumps(
        [note.to_dict() for note in corpus],
        indent=2,
        ensure_ascii=False,
        default=_json_default,
    )


def write_json(corpus: "Corpus", path: Path) -> Path:
    path = Path(path)
    path.write_text(to_json(corpus), encoding="utf-8")
    return path


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value else None


def nodes_frame(corpus: "Corpus") -> pl.DataFrame:
    return pl.DataFrame(
        [
            {
                "ID": note.id,
                "Title": note.title,
                "Filename": note.filename,
                "Tags": "|".join(note.tags),
                "Date": _iso(note.date),
                "LastMod": _iso(note.last_modified),
            }
            for note in corpus
        ],
        schema={name: pl.Utf8 for name in NODE_COLUMNS},
    )


def edges_frame(corpus: "Corpus") -> pl.DataFrame:
    """One row per connection entry, dangling targets included."""
    return pl.DataFrame(
        [(note.id, target) for note in corpus for target in note.connections],
        schema={name: pl.Utf8 for name in EDGE_COLUMNS},
        orient="row",
    )


def write_csv(corpus: "Corpus", nodes_path: Path, edges_path: Path) -> tuple[Path, Path]:
    nodes_frame(corpus).write_csv(nodes_path)
    edges_frame(corpus).write_csv(edges_path)
    return Path(nodes_path), Path(edges_path)

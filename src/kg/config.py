"""Runtime settings read from the environment, plus logging setup.

Explicit keyword arguments take precedence over environment variables,
which take precedence over the defaults:

    KG_NOTES_DIR       – notes directory (default: ``~/notes``)
    KG_INDEX_PATH      – search index file (default: ``<notes>/.kg_search_index.duckdb``)
    KG_SEARCH_CONTEXT  – characters of context around a highlighted match (default: 50)
    KG_LOAD_WORKERS    – threads used to parse notes while loading (default: serial)
    KG_LOG_LEVEL       – logging level name (default: ``INFO``)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

INDEX_FILENAME = ".kg_search_index.duckdb"


def get_env(key: str, default: str | None = None) -> str | None:
    """Get environment variable with optional default."""
    return os.getenv(key, default)


def get_env_int(key: str, default: int | None) -> int | None:
    """Get environment variable as integer."""
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    notes_dir: Path
    index_path: Path
    search_context: int = 50
    load_workers: int | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(
        cls,
        notes_dir: Path | str | None = None,
        *,
        index_path: Path | str | None = None,
        search_context: int | None = None,
        load_workers: int | None = None,
        log_level: str | None = None,
    ) -> "Settings":
        notes = Path(notes_dir or get_env("KG_NOTES_DIR") or "~/notes").expanduser()
        index = index_path or get_env("KG_INDEX_PATH") or notes / INDEX_FILENAME
        context = search_context if search_context is not None else get_env_int("KG_SEARCH_CONTEXT", 50)
        return cls(
            notes_dir=notes,
            index_path=Path(index).expanduser(),
            search_context=max(int(context or 0), 0),
            load_workers=load_workers if load_workers is not None else get_env_int("KG_LOAD_WORKERS", None),
            log_level=(log_level or get_env("KG_LOG_LEVEL") or "INFO").upper(),
        )


def setup_logging(settings: Settings | None = None) -> logging.Logger:
    """Configure root logging for an application embedding the library."""
    level_name = settings.log_level if settings else (get_env("KG_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, level_name, logging.INFO),
    )
    return logging.getLogger("kg")

"""Storage layer for the progression engine.

Provides repository interfaces and SQLite implementations for reference
content (students, problems, achievement definitions) and per-student
progression state.
"""

from pathlib import Path

from .base import ContentStore, ProgressRepository
from .sqlite import SQLiteContentStore, SQLiteProgressRepository
from .connection import get_connection, init_schema, DEFAULT_DB_PATH
from .seed import load_content_bundle

__all__ = [
    # Abstract interfaces
    "ContentStore",
    "ProgressRepository",
    # SQLite implementations
    "SQLiteContentStore",
    "SQLiteProgressRepository",
    # Connection utilities
    "get_connection",
    "init_schema",
    "DEFAULT_DB_PATH",
    # Content loading
    "load_content_bundle",
    # Factory functions
    "get_content_store",
    "get_progress_repo",
]


def get_content_store(db_path: Path = DEFAULT_DB_PATH) -> ContentStore:
    """Get a ContentStore instance."""
    return SQLiteContentStore(db_path)


def get_progress_repo(
    db_path: Path = DEFAULT_DB_PATH, timeout: float = 5.0
) -> ProgressRepository:
    """Get a ProgressRepository instance."""
    return SQLiteProgressRepository(db_path, timeout=timeout)

"""Context storage backends."""

from __future__ import annotations

from .base import ContextStore, StorageError
from .factory import VALID_BACKENDS, StoreFactory
from .json_store import JsonContextStore
from .migrate import migrate_json_to_sqlite
from .sqlite_store import SqliteContextStore

__all__ = [
    "VALID_BACKENDS",
    "ContextStore",
    "JsonContextStore",
    "SqliteContextStore",
    "StorageError",
    "StoreFactory",
    "migrate_json_to_sqlite",
]

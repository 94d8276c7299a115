"""Store factory: backend selection by name."""

from __future__ import annotations

from pathlib import Path

from .base import ContextStore
from .json_store import JsonContextStore
from .sqlite_store import SqliteContextStore

# Valid values for CONTEXT_RELAY_STORAGE
VALID_BACKENDS = frozenset({"json", "sqlite"})


class StoreFactory:
    """Creates the configured storage backend (not yet initialized)."""

    @staticmethod
    def create(kind: str, data_dir: Path | str) -> ContextStore:
        """Create a ``json`` or ``sqlite`` store rooted at *data_dir*.

        Raises:
            ValueError: If *kind* is not a known backend.
        """
        name = kind.strip().lower()
        if name not in VALID_BACKENDS:
            msg = (
                f"Unknown storage backend '{kind}'. "
                f"Valid values: {', '.join(sorted(VALID_BACKENDS))}"
            )
            raise ValueError(msg)
        if name == "json":
            return JsonContextStore(data_dir)
        return SqliteContextStore(data_dir)

    @staticmethod
    def describe(store: ContextStore) -> str:
        """Short label used in health payloads and startup logs."""
        if isinstance(store, SqliteContextStore):
            return "sqlite"
        if isinstance(store, JsonContextStore):
            return "json"
        return type(store).__name__

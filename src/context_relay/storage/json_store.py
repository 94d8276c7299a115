"""Flat-file storage backend: two JSON documents in a data directory."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..models import (
    ContextEntry,
    ContextUpdate,
    NewContextEntry,
    Session,
    new_id,
    now_ms,
)
from ..tokens import estimate_tokens
from .base import ContextStore, StorageError

logger = logging.getLogger(__name__)

SESSION_FILE = "session.json"
CONTEXTS_FILE = "contexts.json"


def _newest_first(entries: list[ContextEntry]) -> list[ContextEntry]:
    # reversed() first so that equal timestamps keep "last inserted first"
    return sorted(reversed(entries), key=lambda e: e.created_at, reverse=True)


class JsonContextStore(ContextStore):
    """Whole-collection read-modify-write over ``session.json`` + ``contexts.json``.

    Every mutation rewrites the affected document through a temporary file
    and ``os.replace``, so a reader never sees a half-written file.  There is
    no inter-process locking: only one process may own a data directory.
    """

    def __init__(self, data_dir: Path | str) -> None:
        self._dir = Path(data_dir)
        self._session_path = self._dir / SESSION_FILE
        self._contexts_path = self._dir / CONTEXTS_FILE
        self._lock = threading.RLock()

    @property
    def data_dir(self) -> Path:
        return self._dir

    # ----- lifecycle -------------------------------------------------------

    def initialize(self) -> Session:
        with self._lock:
            try:
                self._dir.mkdir(parents=True, exist_ok=True)
                if not os.access(self._dir, os.W_OK):
                    msg = f"Data directory is not writable: {self._dir}"
                    raise StorageError(msg)

                if self._session_path.exists():
                    session = self._read_session()
                else:
                    session = Session()
                    self._write_json(self._session_path, session.to_dict())

                if self._contexts_path.exists():
                    entries = self._read_entries()
                else:
                    entries = []
                    self._write_json(self._contexts_path, [])
            except OSError as exc:
                msg = f"Cannot initialize flat-file storage in {self._dir}: {exc}"
                raise StorageError(msg) from exc

        logger.info(
            "Flat-file storage ready at %s (session %s, %d entries)",
            self._dir,
            session.id,
            len(entries),
        )
        return session

    def close(self) -> None:
        """Nothing to release; files are opened per call."""

    # ----- session ---------------------------------------------------------

    def get_session(self) -> Session:
        with self._lock:
            session = self._read_session()
            session.last_accessed = max(session.last_accessed, now_ms())
            self._write_json(self._session_path, session.to_dict())
            return session

    def save_session(self, session: Session) -> None:
        with self._lock:
            self._write_json(self._session_path, session.to_dict())

    # ----- mutations -------------------------------------------------------

    def add_context(self, entry: NewContextEntry) -> ContextEntry:
        with self._lock:
            entries = self._read_entries()
            stored = ContextEntry(
                id=new_id(),
                session_id=entry.session_id,
                content=entry.content,
                entry_type=entry.entry_type,
                source_llm=entry.source_llm,
                token_count=estimate_tokens(entry.content),
                created_at=now_ms(),
                metadata=entry.metadata,
            )
            entries.append(stored)
            self._write_entries(entries)
            return stored

    def update_context(self, entry_id: str, update: ContextUpdate) -> ContextEntry | None:
        with self._lock:
            entries = self._read_entries()
            for index, existing in enumerate(entries):
                if existing.id != entry_id:
                    continue
                changes = update.changes()
                if "content" in changes:
                    changes["token_count"] = estimate_tokens(changes["content"])
                changes["updated_at"] = now_ms()
                entries[index] = existing.model_copy(update=changes)
                self._write_entries(entries)
                return entries[index]
            return None

    def delete_context(self, entry_id: str) -> bool:
        with self._lock:
            entries = self._read_entries()
            remaining = [e for e in entries if e.id != entry_id]
            if len(remaining) == len(entries):
                return False
            self._write_entries(remaining)
            return True

    def clear_all_contexts(self, session_id: str | None = None) -> None:
        with self._lock:
            if session_id is None:
                self._write_entries([])
                return
            entries = self._read_entries()
            self._write_entries([e for e in entries if e.session_id != session_id])

    # ----- reads -----------------------------------------------------------

    def get_all_contexts(self, session_id: str | None = None) -> list[ContextEntry]:
        return _newest_first(self._scoped(session_id))

    def get_context_by_id(self, entry_id: str) -> ContextEntry | None:
        for entry in self._read_entries():
            if entry.id == entry_id:
                return entry
        return None

    def search_contexts(
        self,
        query: str,
        limit: int = 10,
        session_id: str | None = None,
    ) -> list[ContextEntry]:
        """Case-insensitive substring scan, newest match first."""
        if limit <= 0:
            return []
        needle = query.lower()
        matches = [e for e in self._scoped(session_id) if needle in e.content.lower()]
        return _newest_first(matches)[:limit]

    def get_recent_contexts(
        self,
        limit: int = 10,
        session_id: str | None = None,
    ) -> list[ContextEntry]:
        if limit <= 0:
            return []
        return self.get_all_contexts(session_id)[:limit]

    def get_total_tokens(self, session_id: str | None = None) -> int:
        return sum(e.token_count for e in self._scoped(session_id))

    # ----- internals -------------------------------------------------------

    def _scoped(self, session_id: str | None) -> list[ContextEntry]:
        entries = self._read_entries()
        if session_id is None:
            return entries
        return [e for e in entries if e.session_id == session_id]

    def _read_session(self) -> Session:
        data = self._load(self._session_path)
        if not isinstance(data, dict):
            msg = f"Corrupt session document: {self._session_path}"
            raise StorageError(msg)
        try:
            return Session.model_validate(data)
        except ValidationError as exc:
            msg = f"Corrupt session document: {self._session_path}"
            raise StorageError(msg) from exc

    def _read_entries(self) -> list[ContextEntry]:
        data = self._load(self._contexts_path)
        if not isinstance(data, list):
            msg = f"Corrupt contexts document (expected an array): {self._contexts_path}"
            raise StorageError(msg)
        try:
            return [ContextEntry.model_validate(item) for item in data]
        except ValidationError as exc:
            msg = f"Corrupt context entry in {self._contexts_path}"
            raise StorageError(msg) from exc

    def _write_entries(self, entries: list[ContextEntry]) -> None:
        self._write_json(self._contexts_path, [e.to_dict() for e in entries])

    @staticmethod
    def _load(path: Path) -> Any:
        if not path.exists():
            msg = f"Storage not initialized: {path} is missing"
            raise StorageError(msg)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            msg = f"Corrupt JSON in {path}: {exc}"
            raise StorageError(msg) from exc

    def _write_json(self, path: Path, data: Any) -> None:
        """Atomically replace *path* with the JSON encoding of *data*."""
        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=f".{path.name}.", suffix=".tmp")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

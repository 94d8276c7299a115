"""Indexed storage backend: SQLite tables plus an FTS5 full-text index."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

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

DB_FILE = "context.db"

# Largest value SQLite accepts as an INTEGER parameter
_MAX_SQL_INT = 2**63 - 1

_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        created_at INTEGER NOT NULL,
        last_accessed INTEGER NOT NULL,
        metadata TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS contexts (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        session_id TEXT NOT NULL REFERENCES sessions(id),
        content TEXT NOT NULL,
        entry_type TEXT NOT NULL DEFAULT 'summary',
        source_llm TEXT,
        token_count INTEGER NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER,
        metadata TEXT
    )""",
    # External-content index: rows are mirrored explicitly by the write paths.
    """CREATE VIRTUAL TABLE IF NOT EXISTS contexts_fts USING fts5(
        content,
        content='contexts',
        content_rowid='seq'
    )""",
    "CREATE INDEX IF NOT EXISTS idx_contexts_session_id ON contexts(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_contexts_created_at ON contexts(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_contexts_entry_type ON contexts(entry_type)",
    "CREATE INDEX IF NOT EXISTS idx_contexts_source_llm ON contexts(source_llm)",
)

_ENTRY_COLUMNS = (
    "c.id, c.session_id, c.content, c.entry_type, c.source_llm,"
    " c.token_count, c.created_at, c.updated_at, c.metadata"
)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _dump_metadata(metadata: dict[str, Any] | None) -> str | None:
    return json.dumps(metadata) if metadata is not None else None


class SqliteContextStore(ContextStore):
    """SQLite-backed context storage with FTS5 search.

    The full-text index is kept consistent by the write paths themselves:
    each insert, update, delete or clear touches ``contexts`` and
    ``contexts_fts`` in the same transaction.
    """

    def __init__(self, data_dir: Path | str) -> None:
        self._dir = Path(data_dir)
        self._db_path = self._dir / DB_FILE
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    # ----- lifecycle -------------------------------------------------------

    def initialize(self) -> Session:
        with self._lock:
            try:
                self._dir.mkdir(parents=True, exist_ok=True)
                if self._conn is None:
                    self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
                    self._conn.row_factory = sqlite3.Row
                    self._conn.execute("PRAGMA journal_mode=WAL")
                with self._conn:
                    for statement in _SCHEMA:
                        self._conn.execute(statement)
                    row = self._conn.execute(
                        "SELECT id, created_at, last_accessed, metadata FROM sessions LIMIT 1"
                    ).fetchone()
                    if row is None:
                        session = Session()
                        self._conn.execute(
                            "INSERT INTO sessions (id, created_at, last_accessed, metadata)"
                            " VALUES (?, ?, ?, ?)",
                            (session.id, session.created_at, session.last_accessed, None),
                        )
                    else:
                        session = self._row_to_session(row)
            except (OSError, sqlite3.Error) as exc:
                msg = f"Cannot initialize SQLite storage at {self._db_path}: {exc}"
                raise StorageError(msg) from exc

        logger.info("SQLite storage ready at %s (session %s)", self._db_path, session.id)
        return session

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ----- session ---------------------------------------------------------

    def get_session(self) -> Session:
        conn = self._connection()
        with self._lock, conn:
            row = conn.execute(
                "SELECT id, created_at, last_accessed, metadata FROM sessions LIMIT 1"
            ).fetchone()
            if row is None:
                msg = "No session found"
                raise StorageError(msg)
            session = self._row_to_session(row)
            session.last_accessed = max(session.last_accessed, now_ms())
            conn.execute(
                "UPDATE sessions SET last_accessed = ? WHERE id = ?",
                (session.last_accessed, session.id),
            )
            return session

    def save_session(self, session: Session) -> None:
        conn = self._connection()
        with self._lock, conn:
            conn.execute(
                "UPDATE sessions SET last_accessed = ?, metadata = ? WHERE id = ?",
                (session.last_accessed, _dump_metadata(session.metadata), session.id),
            )

    # ----- mutations -------------------------------------------------------

    def add_context(self, entry: NewContextEntry) -> ContextEntry:
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
        conn = self._connection()
        with self._lock, conn:
            cur = conn.execute(
                "INSERT INTO contexts"
                " (id, session_id, content, entry_type, source_llm, token_count,"
                " created_at, metadata)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    stored.id,
                    stored.session_id,
                    stored.content,
                    stored.entry_type.value,
                    stored.source_llm,
                    stored.token_count,
                    stored.created_at,
                    _dump_metadata(stored.metadata),
                ),
            )
            conn.execute(
                "INSERT INTO contexts_fts(rowid, content) VALUES (?, ?)",
                (cur.lastrowid, stored.content),
            )
        return stored

    def update_context(self, entry_id: str, update: ContextUpdate) -> ContextEntry | None:
        conn = self._connection()
        with self._lock, conn:
            row = conn.execute(
                f"SELECT c.seq, {_ENTRY_COLUMNS} FROM contexts c WHERE c.id = ?",
                (entry_id,),
            ).fetchone()
            if row is None:
                return None
            existing = self._row_to_entry(row)
            changes = update.changes()
            if "content" in changes:
                changes["token_count"] = estimate_tokens(changes["content"])
            changes["updated_at"] = now_ms()
            updated = existing.model_copy(update=changes)

            conn.execute(
                "UPDATE contexts SET content = ?, entry_type = ?, source_llm = ?,"
                " token_count = ?, updated_at = ?, metadata = ? WHERE seq = ?",
                (
                    updated.content,
                    updated.entry_type.value,
                    updated.source_llm,
                    updated.token_count,
                    updated.updated_at,
                    _dump_metadata(updated.metadata),
                    row["seq"],
                ),
            )
            if updated.content != existing.content:
                self._unindex(conn, row["seq"], existing.content)
                conn.execute(
                    "INSERT INTO contexts_fts(rowid, content) VALUES (?, ?)",
                    (row["seq"], updated.content),
                )
            return updated

    def delete_context(self, entry_id: str) -> bool:
        conn = self._connection()
        with self._lock, conn:
            row = conn.execute(
                "SELECT seq, content FROM contexts WHERE id = ?", (entry_id,)
            ).fetchone()
            if row is None:
                return False
            self._unindex(conn, row["seq"], row["content"])
            conn.execute("DELETE FROM contexts WHERE seq = ?", (row["seq"],))
            return True

    def clear_all_contexts(self, session_id: str | None = None) -> None:
        conn = self._connection()
        with self._lock, conn:
            if session_id is None:
                conn.execute("INSERT INTO contexts_fts(contexts_fts) VALUES ('delete-all')")
                conn.execute("DELETE FROM contexts")
                return
            rows = conn.execute(
                "SELECT seq, content FROM contexts WHERE session_id = ?", (session_id,)
            ).fetchall()
            for row in rows:
                self._unindex(conn, row["seq"], row["content"])
            conn.execute("DELETE FROM contexts WHERE session_id = ?", (session_id,))

    # ----- reads -----------------------------------------------------------

    def get_all_contexts(self, session_id: str | None = None) -> list[ContextEntry]:
        where, params = self._session_filter(session_id)
        rows = self._query(
            f"SELECT {_ENTRY_COLUMNS} FROM contexts c{where}"
            " ORDER BY c.created_at DESC, c.seq DESC",
            params,
        )
        return [self._row_to_entry(r) for r in rows]

    def get_context_by_id(self, entry_id: str) -> ContextEntry | None:
        rows = self._query(
            f"SELECT {_ENTRY_COLUMNS} FROM contexts c WHERE c.id = ?", (entry_id,)
        )
        return self._row_to_entry(rows[0]) if rows else None

    def search_contexts(
        self,
        query: str,
        limit: int = 10,
        session_id: str | None = None,
    ) -> list[ContextEntry]:
        """FTS5 ``MATCH`` ranked by relevance; substring scan if the query is rejected."""
        if limit <= 0:
            return []
        limit = min(limit, _MAX_SQL_INT)
        session_clause = " AND c.session_id = ?" if session_id is not None else ""
        session_params: tuple[Any, ...] = (session_id,) if session_id is not None else ()
        try:
            rows = self._query(
                f"SELECT {_ENTRY_COLUMNS} FROM contexts_fts"
                " JOIN contexts c ON c.seq = contexts_fts.rowid"
                f" WHERE contexts_fts MATCH ?{session_clause}"
                " ORDER BY rank, c.created_at DESC, c.seq DESC LIMIT ?",
                (query, *session_params, limit),
            )
        except sqlite3.OperationalError as exc:
            logger.warning("Full-text query %r rejected (%s); using substring scan", query, exc)
            rows = self._query(
                f"SELECT {_ENTRY_COLUMNS} FROM contexts c"
                f" WHERE c.content LIKE ? ESCAPE '\\'{session_clause}"
                " ORDER BY c.created_at DESC, c.seq DESC LIMIT ?",
                (f"%{_escape_like(query)}%", *session_params, limit),
            )
        return [self._row_to_entry(r) for r in rows]

    def get_recent_contexts(
        self,
        limit: int = 10,
        session_id: str | None = None,
    ) -> list[ContextEntry]:
        if limit <= 0:
            return []
        limit = min(limit, _MAX_SQL_INT)
        where, params = self._session_filter(session_id)
        rows = self._query(
            f"SELECT {_ENTRY_COLUMNS} FROM contexts c{where}"
            " ORDER BY c.created_at DESC, c.seq DESC LIMIT ?",
            (*params, limit),
        )
        return [self._row_to_entry(r) for r in rows]

    def get_total_tokens(self, session_id: str | None = None) -> int:
        where, params = self._session_filter(session_id)
        rows = self._query(f"SELECT SUM(c.token_count) FROM contexts c{where}", params)
        return rows[0][0] or 0

    # ----- internals -------------------------------------------------------

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            msg = "SQLite storage used before initialize()"
            raise StorageError(msg)
        return self._conn

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        # One shared connection: statements from different threads must not interleave.
        conn = self._connection()
        with self._lock:
            return conn.execute(sql, params).fetchall()

    @staticmethod
    def _unindex(conn: sqlite3.Connection, seq: int, content: str) -> None:
        conn.execute(
            "INSERT INTO contexts_fts(contexts_fts, rowid, content) VALUES ('delete', ?, ?)",
            (seq, content),
        )

    @staticmethod
    def _session_filter(session_id: str | None) -> tuple[str, tuple[Any, ...]]:
        if session_id is None:
            return "", ()
        return " WHERE c.session_id = ?", (session_id,)

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            created_at=row["created_at"],
            last_accessed=row["last_accessed"],
            metadata=json.loads(row["metadata"]) if row["metadata"] is not None else None,
        )

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> ContextEntry:
        return ContextEntry(
            id=row["id"],
            session_id=row["session_id"],
            content=row["content"],
            entry_type=row["entry_type"],
            source_llm=row["source_llm"],
            token_count=row["token_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            metadata=json.loads(row["metadata"]) if row["metadata"] is not None else None,
        )

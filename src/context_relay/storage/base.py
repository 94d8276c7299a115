"""Storage interface: one contract, two interchangeable backends."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..models import ContextEntry, ContextUpdate, NewContextEntry, Session


class StorageError(Exception):
    """Raised when the storage medium is unusable (unwritable, corrupt, uninitialized)."""


class ContextStore(ABC):
    """Abstract interface for context storage backends.

    Reads return entries newest-first.  Mutations are serialized per store
    instance; callers may issue them from several threads.  Methods taking a
    ``session_id`` scope their work to that session when it is given.
    """

    @abstractmethod
    def initialize(self) -> Session:
        """Create persistent structures and the single session if absent.

        Idempotent.  Raises :class:`StorageError` if the medium is unwritable.
        """

    @abstractmethod
    def get_session(self) -> Session:
        """Return the session, refreshing ``last_accessed``."""

    @abstractmethod
    def save_session(self, session: Session) -> None:
        """Persist ``last_accessed`` and ``metadata`` of *session*."""

    @abstractmethod
    def add_context(self, entry: NewContextEntry) -> ContextEntry:
        """Assign id, timestamp and token count, persist, and return the entry."""

    @abstractmethod
    def update_context(self, entry_id: str, update: ContextUpdate) -> ContextEntry | None:
        """Merge *update* into an entry. Returns None if the id is unknown."""

    @abstractmethod
    def delete_context(self, entry_id: str) -> bool:
        """Remove an entry. Returns True if found and removed."""

    @abstractmethod
    def get_all_contexts(self, session_id: str | None = None) -> list[ContextEntry]:
        ...

    @abstractmethod
    def get_context_by_id(self, entry_id: str) -> ContextEntry | None:
        ...

    @abstractmethod
    def search_contexts(
        self,
        query: str,
        limit: int = 10,
        session_id: str | None = None,
    ) -> list[ContextEntry]:
        """Lexical search over content, most relevant first, at most *limit* hits."""

    @abstractmethod
    def get_recent_contexts(
        self,
        limit: int = 10,
        session_id: str | None = None,
    ) -> list[ContextEntry]:
        ...

    @abstractmethod
    def get_total_tokens(self, session_id: str | None = None) -> int:
        ...

    @abstractmethod
    def clear_all_contexts(self, session_id: str | None = None) -> None:
        """Remove every context entry. The session itself is kept."""

    @abstractmethod
    def close(self) -> None:
        """Release underlying handles. Safe to call more than once."""

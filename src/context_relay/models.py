"""Data model: sessions and context entries."""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class EntryType(StrEnum):
    """Kinds of shared context."""

    SUMMARY = "summary"
    NOTE = "note"
    PREFERENCE = "preference"
    CODE = "code"
    DECISION = "decision"


# Assistant tags advertised in the tool catalogue. Storage accepts any tag.
KNOWN_ASSISTANTS: tuple[str, ...] = ("claude", "chatgpt", "gemini")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid4())


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class Session(BaseModel):
    """The single logical container for all context in one server lifetime."""

    id: str = Field(default_factory=new_id)
    created_at: int = Field(default_factory=now_ms)
    last_accessed: int = Field(default_factory=now_ms)
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ContextEntry(BaseModel):
    """One stored unit of shared context."""

    id: str
    session_id: str
    content: str
    entry_type: EntryType = EntryType.SUMMARY
    source_llm: str | None = None
    token_count: int
    created_at: int
    updated_at: int | None = None
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON shape shared by every backend; absent fields are omitted."""
        return self.model_dump(mode="json", exclude_none=True)


class NewContextEntry(BaseModel):
    """Input for ``add_context``: an entry without server-assigned fields."""

    session_id: str
    content: str = Field(min_length=1)
    entry_type: EntryType = EntryType.SUMMARY
    source_llm: str | None = None
    metadata: dict[str, Any] | None = None


class ContextUpdate(BaseModel):
    """Partial update for ``update_context``; ``None`` fields are left alone."""

    content: str | None = Field(default=None, min_length=1)
    entry_type: EntryType | None = None
    source_llm: str | None = None
    metadata: dict[str, Any] | None = None

    def changes(self) -> dict[str, Any]:
        return {k: v for k, v in self.model_dump().items() if v is not None}

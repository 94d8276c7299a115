"""Shared fixtures: both storage backends behind one parametrized fixture."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from context_relay.models import ContextEntry, EntryType, NewContextEntry
from context_relay.storage import ContextStore, JsonContextStore, SqliteContextStore
from context_relay.tokens import estimate_tokens


@pytest.fixture(params=["json", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[ContextStore]:
    backend: ContextStore
    if request.param == "json":
        backend = JsonContextStore(tmp_path / "data")
    else:
        backend = SqliteContextStore(tmp_path / "data")
    backend.initialize()
    yield backend
    backend.close()


def new_entry(
    store: ContextStore,
    content: str,
    entry_type: EntryType = EntryType.SUMMARY,
    source_llm: str | None = None,
    metadata: dict | None = None,
) -> NewContextEntry:
    return NewContextEntry(
        session_id=store.get_session().id,
        content=content,
        entry_type=entry_type,
        source_llm=source_llm,
        metadata=metadata,
    )


def make_entry(
    content: str,
    entry_type: EntryType = EntryType.SUMMARY,
    created_at: int = 1_000,
    source_llm: str | None = None,
) -> ContextEntry:
    """Build an in-memory entry for compaction tests."""
    return ContextEntry(
        id=f"e-{created_at}",
        session_id="s-1",
        content=content,
        entry_type=entry_type,
        source_llm=source_llm,
        token_count=estimate_tokens(content),
        created_at=created_at,
    )

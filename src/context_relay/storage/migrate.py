"""Flat-file -> SQLite migration for an existing data directory."""

from __future__ import annotations

import logging
import shutil
from datetime import UTC, datetime
from pathlib import Path

from ..models import NewContextEntry
from .json_store import CONTEXTS_FILE, SESSION_FILE, JsonContextStore
from .sqlite_store import SqliteContextStore

logger = logging.getLogger(__name__)

BACKUP_DIR = "json-backup"


def migrate_json_to_sqlite(data_dir: Path | str) -> int:
    """Copy every flat-file entry into the SQLite store of the same directory.

    Existing SQLite contexts are cleared first.  Entries are re-added
    oldest-first under the SQLite session so their relative order survives;
    they receive new ids and timestamps.  Both JSON documents are then
    copied to ``json-backup/`` with a timestamp suffix.

    Returns the number of migrated entries (0 if there was nothing to do).
    """
    base = Path(data_dir)
    session_file = base / SESSION_FILE
    contexts_file = base / CONTEXTS_FILE

    if not (session_file.exists() and contexts_file.exists()):
        logger.info("No flat-file documents in %s; nothing to migrate", base)
        return 0

    source = JsonContextStore(base)
    entries = source.get_all_contexts()
    if not entries:
        logger.info("Flat-file store in %s is empty; nothing to migrate", base)
        return 0

    logger.info("Migrating %d context entries from %s", len(entries), base)

    target = SqliteContextStore(base)
    session = target.initialize()
    try:
        target.clear_all_contexts()
        for entry in reversed(entries):
            target.add_context(
                NewContextEntry(
                    session_id=session.id,
                    content=entry.content,
                    entry_type=entry.entry_type,
                    source_llm=entry.source_llm,
                    metadata=entry.metadata,
                )
            )
    finally:
        target.close()

    backup_dir = base / BACKUP_DIR
    backup_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%S%fZ")
    shutil.copyfile(session_file, backup_dir / f"session-{stamp}.json")
    shutil.copyfile(contexts_file, backup_dir / f"contexts-{stamp}.json")

    logger.info("Migrated %d entries; JSON documents backed up to %s", len(entries), backup_dir)
    return len(entries)

"""SQLite database layer for engine state.

Manages the SQLite connection and schema creation. Uses aiosqlite for
async access with WAL mode for concurrent read performance.
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

# One row per persisted entity snapshot, scoped by workflow instance
_SCHEMA = """
CREATE TABLE IF NOT EXISTS entities (
    workflow_id  TEXT NOT NULL,
    namespace    TEXT NOT NULL,
    entity_key   TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    updated_at   TEXT NOT NULL,
    PRIMARY KEY (workflow_id, namespace, entity_key)
);

CREATE INDEX IF NOT EXISTS idx_entities_namespace
    ON entities(workflow_id, namespace);
"""


async def init_db(db_path: str) -> aiosqlite.Connection:
    """Initialize the database connection and create tables if needed.

    Creates parent directories if they don't exist, enables WAL mode,
    then runs the schema DDL.

    Args:
        db_path: Path to the SQLite database file. Supports ~ expansion.
            ``:memory:`` opens a private in-memory database.

    Returns:
        An open aiosqlite connection ready for use.
    """
    if db_path == ":memory:":
        target = db_path
    else:
        resolved = Path(db_path).expanduser()
        resolved.parent.mkdir(parents=True, exist_ok=True)
        target = str(resolved)

    db = await aiosqlite.connect(target)
    await db.execute("PRAGMA journal_mode=WAL")
    await db.executescript(_SCHEMA)
    await db.commit()

    logger.info("State database initialized at %s", target)
    return db


async def close_db(db: aiosqlite.Connection) -> None:
    """Close the database connection."""
    await db.close()

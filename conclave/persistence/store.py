"""Namespaced key-value state store.

The engine treats storage as an opaque key-value store with read, write,
list and delete. Keys are ``namespace:key`` pairs (``session:{id}``,
``ledger:{id}``, ``gate:{phase_id}``, ``outbox:{event_id}``) and every
store instance is scoped to one workflow instance.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)


class StateStore:
    """Workflow-scoped snapshot store backed by SQLite.

    All methods are async and operate on an aiosqlite connection
    initialized by database.init_db(). Each write commits before
    returning so a snapshot is durable once the call completes.
    """

    def __init__(self, db: aiosqlite.Connection, workflow_id: str) -> None:
        self._db = db
        self._workflow_id = workflow_id

    @property
    def workflow_id(self) -> str:
        return self._workflow_id

    async def read(self, namespace: str, key: str) -> dict[str, Any] | None:
        """Return the stored payload, or None if absent."""
        async with self._db.execute(
            "SELECT payload_json FROM entities"
            " WHERE workflow_id = ? AND namespace = ? AND entity_key = ?",
            (self._workflow_id, namespace, key),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    async def write(self, namespace: str, key: str, payload: dict[str, Any]) -> None:
        """Insert or replace a payload."""
        await self.write_many([(namespace, key, payload)])

    async def write_many(
        self, entries: Iterable[tuple[str, str, dict[str, Any]]],
    ) -> None:
        """Insert or replace several payloads in one transaction.

        Either every entry is durable once the call returns or none is,
        so a snapshot and the outbox events it produced land together.
        """
        now = datetime.now(UTC).isoformat()
        rows = [
            (self._workflow_id, namespace, key, json.dumps(payload), now)
            for namespace, key, payload in entries
        ]
        try:
            await self._db.executemany(
                """
                INSERT OR REPLACE INTO entities
                    (workflow_id, namespace, entity_key, payload_json, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                rows,
            )
        except Exception:
            await self._db.rollback()
            raise
        await self._db.commit()
        logger.debug(
            "Wrote %s (workflow %s)",
            ", ".join(f"{row[1]}:{row[2]}" for row in rows), self._workflow_id,
        )

    async def list(self, namespace: str) -> list[dict[str, Any]]:
        """Return every payload in a namespace, ordered by key."""
        payloads: list[dict[str, Any]] = []
        async with self._db.execute(
            "SELECT payload_json FROM entities"
            " WHERE workflow_id = ? AND namespace = ? ORDER BY entity_key",
            (self._workflow_id, namespace),
        ) as cursor:
            async for row in cursor:
                payloads.append(json.loads(row[0]))
        return payloads

    async def keys(self, namespace: str) -> list[str]:
        """Return every key in a namespace."""
        async with self._db.execute(
            "SELECT entity_key FROM entities"
            " WHERE workflow_id = ? AND namespace = ? ORDER BY entity_key",
            (self._workflow_id, namespace),
        ) as cursor:
            return [row[0] for row in await cursor.fetchall()]

    async def delete(self, namespace: str, key: str) -> bool:
        """Delete a payload. Returns True if a row was removed."""
        cursor = await self._db.execute(
            "DELETE FROM entities"
            " WHERE workflow_id = ? AND namespace = ? AND entity_key = ?",
            (self._workflow_id, namespace, key),
        )
        await self._db.commit()
        return cursor.rowcount > 0


async def list_workflows(db: aiosqlite.Connection) -> list[str]:
    """Return the ids of every workflow instance with persisted state."""
    async with db.execute(
        "SELECT DISTINCT workflow_id FROM entities ORDER BY workflow_id"
    ) as cursor:
        return [row[0] for row in await cursor.fetchall()]

"""Outbound engine events and their dispatcher.

Every mutating engine operation returns the events it produced; the
engine hands them to an EventDispatcher, which delivers them to
registered listeners (notification and persistence collaborators).

Delivery is at-least-once. Components write each event to the ``outbox``
namespace in the same transaction as the snapshot that produced it (see
outbox_entries()); the dispatcher removes it only after every listener
accepted it. Events left behind are retried by
redeliver_pending(). Listeners must be idempotent on ``dedupe_key``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from conclave.persistence.store import StateStore

logger = logging.getLogger(__name__)

OUTBOX_NAMESPACE = "outbox"


class EventType(StrEnum):
    """Types of events emitted by the engine."""

    DECISION_REQUESTED = "decision_requested"
    VOTE_RECORDED = "vote_recorded"
    DECISION_RESOLVED = "decision_resolved"
    COMPLIANCE_RECORDED = "compliance_recorded"
    PHASE_GATE_CHANGED = "phase_gate_changed"


class EngineEvent(BaseModel):
    """A single outbound event.

    ``status`` is the entity's resulting status for transition events; for
    record events (votes, compliance results) it identifies the record.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: EventType = Field(description="Event type")
    entity_id: str = Field(description="Session, ledger or phase gate id")
    status: str = Field(description="Resulting status or record identity")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = Field(
        default_factory=dict, description="Event payload, varies by event type",
    )

    @property
    def dedupe_key(self) -> tuple[str, str, str]:
        """Idempotency key: (event type, entity id, resulting status)."""
        return (str(self.type), self.entity_id, self.status)


def decision_requested(session_id: str, **data: Any) -> EngineEvent:
    return EngineEvent(
        type=EventType.DECISION_REQUESTED,
        entity_id=session_id,
        status="pending",
        data=data,
    )


def vote_recorded(
    session_id: str, member_id: str, decision: str, at: datetime, **data: Any,
) -> EngineEvent:
    return EngineEvent(
        type=EventType.VOTE_RECORDED,
        entity_id=session_id,
        status=f"{member_id}:{decision}@{at.isoformat()}",
        data={"member_id": member_id, "decision": str(decision), **data},
    )


def decision_resolved(session_id: str, outcome: str, **data: Any) -> EngineEvent:
    return EngineEvent(
        type=EventType.DECISION_RESOLVED,
        entity_id=session_id,
        status=str(outcome),
        data={"outcome": str(outcome), **data},
    )


def compliance_recorded(ledger_id: str, result: dict[str, Any], **data: Any) -> EngineEvent:
    return EngineEvent(
        type=EventType.COMPLIANCE_RECORDED,
        entity_id=ledger_id,
        status=f"{result['requirement_id']}@{result['timestamp']}",
        data={"result": result, **data},
    )


def phase_gate_changed(
    phase_id: str, old_state: str, new_state: str, **data: Any,
) -> EngineEvent:
    return EngineEvent(
        type=EventType.PHASE_GATE_CHANGED,
        entity_id=phase_id,
        status=str(new_state),
        data={"old_state": str(old_state), "new_state": str(new_state), **data},
    )


# Type alias for event listener callbacks
EventListener = Callable[[EngineEvent], Any]

DEFAULT_HISTORY_LIMIT = 1000


def outbox_entries(events: Iterable[EngineEvent]) -> list[tuple[str, str, dict[str, Any]]]:
    """Store entries that put ``events`` in the outbox.

    Components pass these to StateStore.write_many() together with the
    snapshot that produced the events.
    """
    return [
        (OUTBOX_NAMESPACE, event.event_id, event.model_dump(mode="json"))
        for event in events
    ]


class EventDispatcher:
    """Delivers engine events to registered listeners.

    Listeners can be sync or async callables. Listener exceptions are
    logged but never propagate; an event any listener failed on stays in
    the outbox for redelivery. Only the most recent ``history_limit``
    events are kept in memory.
    """

    def __init__(
        self,
        store: StateStore | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._store = store
        self._listeners: list[EventListener] = []
        self._history: deque[EngineEvent] = deque(maxlen=history_limit)

    @property
    def history(self) -> list[EngineEvent]:
        """Most recently dispatched events, including redeliveries."""
        return list(self._history)

    def add_listener(self, listener: EventListener) -> None:
        """Register a listener to receive engine events."""
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        """Remove a previously registered listener."""
        self._listeners = [ln for ln in self._listeners if ln != listener]

    async def dispatch(self, events: Iterable[EngineEvent]) -> None:
        """Persist each event to the outbox, deliver it, then clear it."""
        events = list(events)
        if self._store is not None and events:
            await self._store.write_many(outbox_entries(events))
        await self.deliver(events)

    async def deliver(self, events: Iterable[EngineEvent]) -> None:
        """Deliver events that are already in the outbox.

        Each event is cleared from the outbox once every listener
        accepted it.
        """
        for event in events:
            if await self._deliver(event) and self._store is not None:
                await self._store.delete(OUTBOX_NAMESPACE, event.event_id)

    async def redeliver_pending(self) -> int:
        """Retry every event still in the outbox.

        Returns:
            Number of events delivered successfully on this attempt.
        """
        if self._store is None:
            return 0
        pending = [
            EngineEvent.model_validate(payload)
            for payload in await self._store.list(OUTBOX_NAMESPACE)
        ]
        pending.sort(key=lambda e: e.timestamp)

        delivered = 0
        for event in pending:
            if await self._deliver(event):
                await self._store.delete(OUTBOX_NAMESPACE, event.event_id)
                delivered += 1
        if pending:
            logger.info(
                "Redelivered %d of %d pending events", delivered, len(pending),
            )
        return delivered

    async def _deliver(self, event: EngineEvent) -> bool:
        self._history.append(event)
        ok = True
        for listener in self._listeners:
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                ok = False
                logger.exception(
                    "Event listener error for %s on %s", event.type, event.entity_id,
                )
        return ok

"""Phase gate state machine.

A phase gate moves a workflow phase forward only when its committee
decision is approved and its compliance ledger passes, both read under
one consistent snapshot. Locks are always taken in the same order: the
gate, then its decision session, then its ledger.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime

from conclave.clock import Clock, utc_now
from conclave.compliance.tracker import ComplianceTracker
from conclave.consensus.coordinator import CommitteeCoordinator
from conclave.errors import (
    ConfigurationError,
    EntityFaultedError,
    InvalidTransitionError,
    InvariantViolationError,
    UnknownGateError,
)
from conclave.events import EngineEvent, outbox_entries, phase_gate_changed
from conclave.locks import EntityLocks
from conclave.persistence.store import StateStore
from conclave.schemas.committee import SessionStatus
from conclave.schemas.compliance import GateDecision
from conclave.schemas.gate import (
    GateState,
    GateTransition,
    PhaseGateRecord,
    PhaseGateStatus,
    WorkflowPhase,
)

logger = logging.getLogger(__name__)

GATE_NAMESPACE = "gate"

ALLOWED_TRANSITIONS: dict[GateState, frozenset[GateState]] = {
    GateState.NOT_STARTED: frozenset({GateState.IN_PROGRESS}),
    GateState.IN_PROGRESS: frozenset({GateState.AWAITING_APPROVAL}),
    GateState.AWAITING_APPROVAL: frozenset(
        {GateState.COMPLETED, GateState.FAILED, GateState.BLOCKED}
    ),
    GateState.BLOCKED: frozenset({GateState.AWAITING_APPROVAL, GateState.FAILED}),
    GateState.COMPLETED: frozenset(),
    GateState.FAILED: frozenset(),
}

_FAILING_SESSION = frozenset(
    {SessionStatus.REJECTED, SessionStatus.EXPIRED, SessionStatus.CANCELLED}
)


class PhaseGate:
    """One gate and its transition history."""

    def __init__(self, record: PhaseGateRecord) -> None:
        self._record = record

    @property
    def phase_id(self) -> str:
        return self._record.phase_id

    @property
    def state(self) -> GateState:
        return self._record.state

    @property
    def session_id(self) -> str | None:
        return self._record.session_id

    @property
    def ledger_id(self) -> str:
        return self._record.ledger_id

    def start(self, now: datetime) -> list[GateTransition]:
        if self.state != GateState.NOT_STARTED:
            raise InvalidTransitionError(self.phase_id, self.state, "start")
        return [self._move(GateState.IN_PROGRESS, now, "Phase started")]

    def request_approval(self, session_id: str, now: datetime) -> list[GateTransition]:
        if self.state != GateState.IN_PROGRESS:
            raise InvalidTransitionError(self.phase_id, self.state, "request approval for")
        self._record.session_id = session_id
        return [self._move(
            GateState.AWAITING_APPROVAL, now, f"Awaiting decision session {session_id}",
        )]

    def apply(
        self,
        session_status: SessionStatus,
        decision: GateDecision,
        now: datetime,
    ) -> list[GateTransition]:
        """Advance the gate from a consistent session/compliance snapshot.

        Returns the transitions made; none when nothing changed.
        """
        if self.state not in (GateState.AWAITING_APPROVAL, GateState.BLOCKED):
            return []
        self._record.last_decision = decision

        if session_status in _FAILING_SESSION:
            return [self._move(GateState.FAILED, now, f"Decision session {session_status}")]

        if not decision.passed:
            if self.state == GateState.BLOCKED:
                return []
            return [self._move(GateState.BLOCKED, now, "; ".join(decision.reasons))]

        moves: list[GateTransition] = []
        if self.state == GateState.BLOCKED:
            moves.append(self._move(
                GateState.AWAITING_APPROVAL, now, "Compliance issues remediated",
            ))
        if session_status == SessionStatus.APPROVED:
            moves.append(self._move(
                GateState.COMPLETED, now,
                f"Decision approved and compliance score {decision.score:.2f} passed",
            ))
        return moves

    def _move(self, target: GateState, now: datetime, reason: str) -> GateTransition:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvariantViolationError(
                f"Gate {self.phase_id} cannot move from {self.state} to {target}"
            )
        transition = GateTransition(
            from_state=self.state, to_state=target, at=now, reason=reason,
        )
        self._record.state = target
        self._record.history.append(transition)
        return transition

    def to_record(self) -> PhaseGateRecord:
        return self._record.model_copy(deep=True)

    @classmethod
    def from_record(cls, record: PhaseGateRecord) -> PhaseGate:
        return cls(record.model_copy(deep=True))


@dataclass
class GateUpdate:
    """Committed gate snapshot plus the events the operation produced."""

    gate: PhaseGateRecord
    transitions: list[GateTransition] = field(default_factory=list)
    events: list[EngineEvent] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return any(t.to_state == GateState.COMPLETED for t in self.transitions)


class PhaseGateController:
    """Owns the phase gates of one workflow instance."""

    def __init__(
        self,
        coordinator: CommitteeCoordinator,
        tracker: ComplianceTracker,
        store: StateStore,
        clock: Clock = utc_now,
    ) -> None:
        self._coordinator = coordinator
        self._tracker = tracker
        self._store = store
        self._clock = clock
        self._gates: dict[str, PhaseGateRecord] = {}
        self._locks = EntityLocks()
        self._faulted: dict[str, str] = {}

    async def load(self) -> int:
        payloads = await self._store.list(GATE_NAMESPACE)
        for payload in payloads:
            record = PhaseGateRecord.model_validate(payload)
            self._gates[record.phase_id] = record
        logger.info("Loaded %d phase gates", len(payloads))
        return len(payloads)

    async def open_gate(
        self,
        phase_id: str,
        ledger_id: str,
        min_score: float,
        phase: WorkflowPhase | None = None,
    ) -> GateUpdate:
        """Create a gate in ``not_started``.

        Raises:
            ConfigurationError: The gate id is taken or min_score is outside [0, 1].
            UnknownLedgerError: The ledger does not exist.
        """
        if phase_id in self._gates:
            raise ConfigurationError(f"Phase gate already exists: {phase_id}")
        if not 0.0 <= min_score <= 1.0:
            raise ConfigurationError(f"min_score must be in [0, 1], got {min_score}")
        self._tracker.get_ledger(ledger_id)

        record = PhaseGateRecord(
            phase_id=phase_id,
            phase=phase,
            ledger_id=ledger_id,
            min_score=min_score,
            created_at=self._clock(),
        )
        async with self._lock(phase_id):
            await self._commit(record)
        logger.info("Opened phase gate %s (ledger %s)", phase_id, ledger_id)
        return GateUpdate(record.model_copy(deep=True))

    async def start(self, phase_id: str) -> GateUpdate:
        """Move a gate from not_started to in_progress."""
        return await self._mutate(phase_id, lambda gate, now: gate.start(now))

    async def request_approval(self, phase_id: str, session_id: str) -> GateUpdate:
        """Bind a decision session and await approval.

        The gate is evaluated in the same call, so a session that already
        resolved takes effect immediately.
        """
        self._coordinator.get_status(session_id)
        return await self._mutate(
            phase_id,
            lambda gate, now: gate.request_approval(session_id, now),
            evaluate=True,
        )

    async def evaluate(self, phase_id: str) -> GateUpdate:
        """Re-run the combined session and compliance check."""
        return await self._mutate(phase_id, lambda gate, now: [], evaluate=True)

    def gates_for_session(self, session_id: str) -> list[str]:
        return [
            r.phase_id for r in self._gates.values()
            if r.session_id == session_id and not r.state.is_terminal
        ]

    def gates_for_ledger(self, ledger_id: str) -> list[str]:
        return [
            r.phase_id for r in self._gates.values()
            if r.ledger_id == ledger_id and not r.state.is_terminal
        ]

    def get_gate(self, phase_id: str) -> PhaseGateRecord:
        self._require(phase_id)
        return self._gates[phase_id].model_copy(deep=True)

    def list_gates(self) -> list[PhaseGateRecord]:
        return sorted(self._gates.values(), key=lambda r: r.created_at)

    def get_status(self, phase_id: str) -> PhaseGateStatus:
        """Combined read model from the last committed states."""
        self._require(phase_id)
        record = self._gates[phase_id]
        reasons: list[str] = []

        session_status = None
        if record.session_id is not None:
            session_status = self._coordinator.get_status(record.session_id).status
            if session_status != SessionStatus.APPROVED:
                reasons.append(f"Decision session {record.session_id} is {session_status}")
        elif not record.state.is_terminal:
            reasons.append("No decision session requested")

        compliance = self._tracker.get_gate_decision(record.ledger_id, record.min_score)
        reasons.extend(compliance.reasons)

        return PhaseGateStatus(
            phase_id=record.phase_id,
            phase=record.phase,
            state=record.state,
            session_id=record.session_id,
            session_status=session_status,
            compliance=compliance,
            reasons=[] if record.state == GateState.COMPLETED else reasons,
        )

    def is_faulted(self, phase_id: str) -> bool:
        return phase_id in self._faulted

    # ── Internals ────────────────────────────────────────────────

    async def _mutate(
        self,
        phase_id: str,
        action: Callable[[PhaseGate, datetime], list[GateTransition]],
        evaluate: bool = False,
    ) -> GateUpdate:
        self._require(phase_id)
        async with self._lock(phase_id):
            if phase_id in self._faulted:
                raise EntityFaultedError(phase_id, self._faulted[phase_id])
            gate = PhaseGate.from_record(self._gates[phase_id])
            events: list[EngineEvent] = []
            try:
                transitions = action(gate, self._clock())
                if evaluate and gate.session_id is not None:
                    transitions += await self._combined_check(gate, events)
            except InvariantViolationError as exc:
                self._faulted[phase_id] = str(exc)
                logger.error("Phase gate %s halted: %s", phase_id, exc)
                raise

            record = gate.to_record()
            changes = [
                phase_gate_changed(
                    phase_id,
                    transition.from_state,
                    transition.to_state,
                    phase=record.phase,
                    reason=transition.reason,
                    at=transition.at.isoformat(),
                )
                for transition in transitions
            ]
            if transitions or record != self._gates[phase_id]:
                await self._commit(record, changes)

        for transition in transitions:
            logger.info(
                "Phase gate %s: %s -> %s (%s)",
                phase_id, transition.from_state, transition.to_state, transition.reason,
            )
        events.extend(changes)
        return GateUpdate(record.model_copy(deep=True), transitions, events)

    async def _combined_check(
        self, gate: PhaseGate, events: list[EngineEvent],
    ) -> list[GateTransition]:
        async with self._coordinator.hold(gate.session_id) as (session, expired):
            events.extend(expired)
            async with self._tracker.hold(gate.ledger_id) as ledger:
                decision = ledger.gate_decision(self._gates[gate.phase_id].min_score)
                return gate.apply(session.status, decision, self._clock())

    def _lock(self, phase_id: str) -> AbstractAsyncContextManager[None]:
        return self._locks.hold(phase_id)

    def _require(self, phase_id: str) -> None:
        if phase_id not in self._gates:
            raise UnknownGateError(phase_id)

    async def _commit(
        self, record: PhaseGateRecord, events: Iterable[EngineEvent] = (),
    ) -> None:
        await self._store.write_many([
            (GATE_NAMESPACE, record.phase_id, record.model_dump(mode="json")),
            *outbox_entries(events),
        ])
        self._gates[record.phase_id] = record

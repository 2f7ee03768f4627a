"""Workflow engine facade.

Wires the committee coordinator, the compliance tracker and the phase
gate controller of one workflow instance to a shared state store and an
event dispatcher. Every inbound operation dispatches the events it
produced and re-evaluates the phase gates that depend on whatever it
changed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

import aiosqlite

from conclave.clock import Clock, utc_now
from conclave.compliance.checks import CheckRegistry
from conclave.compliance.ledger import ComplianceLedger
from conclave.compliance.tracker import ComplianceTracker
from conclave.consensus.committee import Committee
from conclave.consensus.coordinator import CommitteeCoordinator, SessionUpdate
from conclave.errors import (
    ConclaveError,
    ConfigurationError,
    EngineNotLoadedError,
    InvalidTransitionError,
    SessionClosedError,
)
from conclave.events import EventDispatcher, EventListener
from conclave.gate.machine import GateUpdate, PhaseGateController
from conclave.gate.phases import default_requirements, next_phase, phase_gate_id
from conclave.persistence.database import close_db, init_db
from conclave.persistence.store import StateStore
from conclave.schemas.committee import DecisionSessionRecord, VoteDecision
from conclave.schemas.compliance import (
    ComplianceLedgerRecord,
    ComplianceRequirement,
    ComplianceResult,
    GateDecision,
)
from conclave.schemas.engine import EngineConfig
from conclave.schemas.gate import (
    GateState,
    PhaseGateRecord,
    PhaseGateStatus,
    WorkflowPhase,
)

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Consensus and compliance engine for one workflow instance.

    ``load()`` must complete before any other operation; it restores
    persisted sessions, ledgers and gates and retries undelivered events.
    """

    def __init__(
        self,
        store: StateStore,
        committee: Committee,
        config: EngineConfig | None = None,
        registry: CheckRegistry | None = None,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._config = config or EngineConfig()
        self._clock = clock
        self._dispatcher = EventDispatcher(store)
        self._coordinator = CommitteeCoordinator(committee, store, clock, id_factory)
        self._tracker = ComplianceTracker(store, registry, clock)
        self._gates = PhaseGateController(self._coordinator, self._tracker, store, clock)
        self._db: aiosqlite.Connection | None = None
        self._loaded = False

    @classmethod
    async def connect(
        cls,
        workflow_id: str,
        committee: Committee,
        config: EngineConfig | None = None,
        db_path: str | None = None,
        **kwargs: Any,
    ) -> WorkflowEngine:
        """Open the state database, build an engine and load its state.

        The engine owns the connection; call close() when done.
        """
        config = config or EngineConfig()
        db = await init_db(db_path or config.state_db_path)
        engine = cls(StateStore(db, workflow_id), committee, config, **kwargs)
        engine._db = db
        await engine.load()
        return engine

    async def close(self) -> None:
        if self._db is not None:
            await close_db(self._db)
            self._db = None

    # ── Wiring ───────────────────────────────────────────────────

    @property
    def workflow_id(self) -> str:
        return self._store.workflow_id

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def committee(self) -> Committee:
        return self._coordinator.committee

    @property
    def coordinator(self) -> CommitteeCoordinator:
        return self._coordinator

    @property
    def tracker(self) -> ComplianceTracker:
        return self._tracker

    @property
    def gates(self) -> PhaseGateController:
        return self._gates

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    def add_listener(self, listener: EventListener) -> None:
        self._dispatcher.add_listener(listener)

    def remove_listener(self, listener: EventListener) -> None:
        self._dispatcher.remove_listener(listener)

    async def load(self) -> None:
        """Restore persisted state and redeliver pending events.

        Gates still waiting on a decision are re-evaluated, so a session
        or ledger change committed just before a restart reaches its gate.
        """
        await self._coordinator.load()
        await self._tracker.load()
        await self._gates.load()
        self._loaded = True
        await self._dispatcher.redeliver_pending()
        for record in self._gates.list_gates():
            if record.state not in (GateState.AWAITING_APPROVAL, GateState.BLOCKED):
                continue
            if self._gates.is_faulted(record.phase_id):
                continue
            try:
                update = await self._gates.evaluate(record.phase_id)
            except ConclaveError as exc:
                logger.warning(
                    "Phase gate %s not re-evaluated on load: %s", record.phase_id, exc,
                )
                continue
            await self._after_gate_update(update)
        logger.info("Workflow %s loaded", self.workflow_id)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            raise EngineNotLoadedError(
                f"Workflow {self.workflow_id} must be loaded before accepting operations"
            )

    # ── Decisions ────────────────────────────────────────────────

    async def create_approval_request(
        self,
        domain: str | None = None,
        threshold: float | None = None,
        timeout_seconds: float | None = None,
        eligible_members: Iterable[str] | None = None,
        target: str = "",
        created_by: str = "system",
    ) -> DecisionSessionRecord:
        """Open a decision session; unset policy values come from config."""
        self._ensure_loaded()
        update = await self._coordinator.create_request(
            domain=domain or self._config.default_domain,
            threshold=threshold if threshold is not None else self._config.default_threshold,
            timeout_seconds=(
                timeout_seconds
                if timeout_seconds is not None
                else self._config.default_timeout_seconds
            ),
            eligible_members=eligible_members,
            target=target,
            created_by=created_by,
        )
        await self._dispatcher.deliver(update.events)
        return update.session

    async def submit_vote(
        self,
        session_id: str,
        member_id: str,
        decision: VoteDecision | str,
        rationale: str | None = None,
    ) -> DecisionSessionRecord:
        self._ensure_loaded()
        try:
            update = await self._coordinator.submit_vote(
                session_id, member_id, decision, rationale,
            )
        except SessionClosedError as exc:
            if exc.events:
                await self._dispatcher.deliver(exc.events)
                await self._reevaluate(self._gates.gates_for_session(session_id))
            raise
        await self._after_session_update(update)
        return update.session

    async def cancel_approval_request(
        self, session_id: str, requested_by: str, reason: str = "",
    ) -> DecisionSessionRecord:
        self._ensure_loaded()
        try:
            update = await self._coordinator.cancel_request(session_id, requested_by, reason)
        except SessionClosedError as exc:
            if exc.events:
                await self._dispatcher.deliver(exc.events)
                await self._reevaluate(self._gates.gates_for_session(session_id))
            raise
        await self._after_session_update(update)
        return update.session

    async def check_expiry(self, session_id: str) -> DecisionSessionRecord:
        self._ensure_loaded()
        update = await self._coordinator.check_expiry(session_id)
        await self._after_session_update(update)
        return update.session

    def get_session_status(self, session_id: str) -> DecisionSessionRecord:
        self._ensure_loaded()
        return self._coordinator.get_status(session_id)

    async def sweep_expired(self) -> list[SessionUpdate]:
        """Expire every overdue session and fail the gates waiting on them."""
        self._ensure_loaded()
        updates = await self._coordinator.sweep_expired()
        for update in updates:
            await self._after_session_update(update)
        return updates

    async def _after_session_update(self, update: SessionUpdate) -> None:
        await self._dispatcher.deliver(update.events)
        if update.resolved and update.events:
            await self._reevaluate(self._gates.gates_for_session(update.session.session_id))

    # ── Compliance ───────────────────────────────────────────────

    async def create_ledger(
        self,
        requirements: list[ComplianceRequirement],
        ledger_id: str | None = None,
    ) -> ComplianceLedgerRecord:
        self._ensure_loaded()
        return await self._tracker.create_ledger(requirements, ledger_id)

    async def run_compliance_check(
        self,
        ledger_id: str,
        requirement_id: str,
        context: Mapping[str, Any],
    ) -> ComplianceResult:
        self._ensure_loaded()
        update = await self._tracker.run_compliance_check(ledger_id, requirement_id, context)
        await self._dispatcher.deliver(update.events)
        if update.recorded:
            await self._reevaluate(self._gates.gates_for_ledger(ledger_id))
        return update.result

    async def record_compliance_result(
        self, ledger_id: str, result: ComplianceResult,
    ) -> bool:
        """Record an externally produced result. Returns False for duplicates."""
        self._ensure_loaded()
        update = await self._tracker.record_result(ledger_id, result)
        await self._dispatcher.deliver(update.events)
        if update.recorded:
            await self._reevaluate(self._gates.gates_for_ledger(ledger_id))
        return update.recorded

    def get_gate_decision(
        self, ledger_id: str, min_score: float | None = None,
    ) -> GateDecision:
        self._ensure_loaded()
        if min_score is None:
            min_score = self._config.min_compliance_score
        return self._tracker.get_gate_decision(ledger_id, min_score)

    def get_ledger(self, ledger_id: str) -> ComplianceLedger:
        self._ensure_loaded()
        return self._tracker.get_ledger(ledger_id)

    # ── Phase gates ──────────────────────────────────────────────

    async def open_phase_gate(
        self,
        phase_id: str | None = None,
        ledger_id: str | None = None,
        min_score: float | None = None,
        phase: WorkflowPhase | None = None,
    ) -> PhaseGateRecord:
        """Open a gate, creating the phase's default ledger if none is given.

        Raises:
            ConfigurationError: Neither a phase nor a gate id and ledger
                were given.
        """
        self._ensure_loaded()
        if phase_id is None:
            if phase is None:
                raise ConfigurationError("A phase gate needs a phase_id or a workflow phase")
            phase_id = phase_gate_id(self.workflow_id, phase)
        if ledger_id is None:
            if phase is None:
                raise ConfigurationError(f"Phase gate {phase_id} needs a ledger_id")
            ledger = await self._tracker.create_ledger(
                default_requirements(phase), ledger_id=f"{phase_id}:ledger",
            )
            ledger_id = ledger.ledger_id
        if min_score is None:
            min_score = self._config.policy_for(phase).min_score

        update = await self._gates.open_gate(phase_id, ledger_id, min_score, phase)
        await self._dispatcher.deliver(update.events)
        return update.gate

    async def start_phase(self, phase_id: str) -> PhaseGateRecord:
        self._ensure_loaded()
        update = await self._gates.start(phase_id)
        await self._after_gate_update(update)
        return update.gate

    async def request_phase_approval(
        self,
        phase_id: str,
        session_id: str | None = None,
        eligible_members: Iterable[str] | None = None,
        created_by: str = "system",
    ) -> PhaseGateRecord:
        """Put a gate up for approval.

        Without ``session_id`` a decision session is created from the
        phase's policy, targeting the gate.
        """
        self._ensure_loaded()
        if session_id is None:
            gate = self._gates.get_gate(phase_id)
            if gate.state != GateState.IN_PROGRESS:
                raise InvalidTransitionError(phase_id, gate.state, "request approval for")
            policy = self._config.policy_for(gate.phase)
            session = await self.create_approval_request(
                domain=policy.domain,
                threshold=policy.threshold,
                timeout_seconds=policy.timeout_seconds,
                eligible_members=eligible_members,
                target=phase_id,
                created_by=created_by,
            )
            session_id = session.session_id
        update = await self._gates.request_approval(phase_id, session_id)
        await self._after_gate_update(update)
        return update.gate

    async def evaluate_phase_gate(self, phase_id: str) -> PhaseGateRecord:
        self._ensure_loaded()
        update = await self._gates.evaluate(phase_id)
        await self._after_gate_update(update)
        return update.gate

    async def get_phase_gate_status(self, phase_id: str) -> PhaseGateStatus:
        """Combined gate status.

        A gate waiting on approval is evaluated first, so a deadline that
        passed since the last operation is reflected.
        """
        self._ensure_loaded()
        gate = self._gates.get_gate(phase_id)
        if gate.state in (GateState.AWAITING_APPROVAL, GateState.BLOCKED):
            if not self._gates.is_faulted(phase_id):
                await self.evaluate_phase_gate(phase_id)
        return self._gates.get_status(phase_id)

    def list_phase_gates(self) -> list[PhaseGateRecord]:
        self._ensure_loaded()
        return self._gates.list_gates()

    async def _reevaluate(self, phase_ids: Iterable[str]) -> None:
        for phase_id in phase_ids:
            if self._gates.is_faulted(phase_id):
                continue
            update = await self._gates.evaluate(phase_id)
            await self._after_gate_update(update)

    async def _after_gate_update(self, update: GateUpdate) -> None:
        await self._dispatcher.deliver(update.events)
        if not update.completed or not self._config.auto_open_next_phase:
            return
        if update.gate.phase is None:
            return
        upcoming = next_phase(update.gate.phase)
        if upcoming is None:
            logger.info("Workflow %s completed all phases", self.workflow_id)
            return
        upcoming_id = phase_gate_id(self.workflow_id, upcoming)
        if upcoming_id in {g.phase_id for g in self._gates.list_gates()}:
            return
        await self.open_phase_gate(phase_id=upcoming_id, phase=upcoming)

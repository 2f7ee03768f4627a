"""Tests for conclave.gate: the phase catalogue and the gate state machine."""

from dataclasses import dataclass

import pytest

from conclave.compliance.tracker import ComplianceTracker
from conclave.consensus.coordinator import CommitteeCoordinator
from conclave.errors import (
    ConfigurationError,
    InvalidTransitionError,
    UnknownGateError,
    UnknownLedgerError,
    UnknownSessionError,
)
from conclave.events import EventType
from conclave.gate.machine import PhaseGateController
from conclave.gate.phases import (
    PHASE_SEQUENCE,
    approval_criteria,
    default_requirements,
    display_name,
    next_phase,
    next_phase_actions,
    phase_gate_id,
)
from conclave.schemas.committee import SessionStatus
from conclave.schemas.compliance import (
    ComplianceRequirement,
    ComplianceResult,
    Severity,
)
from conclave.schemas.gate import GateState, WorkflowPhase


# ── Factories ──────────────────────────────────────────────────────


@dataclass
class Harness:
    coordinator: CommitteeCoordinator
    tracker: ComplianceTracker
    gates: PhaseGateController
    clock: object

    async def record(self, passed: bool) -> None:
        self.clock.advance(1)
        await self.tracker.record_result("L1", ComplianceResult(
            requirement_id="review",
            passed=passed,
            score=1.0 if passed else 0.0,
            findings=() if passed else ("Review found open defects",),
            timestamp=self.clock(),
        ))

    async def session(self, threshold: float = 0.6) -> str:
        update = await self.coordinator.create_request(
            "design", threshold, 60, target="P1", created_by="alice",
        )
        return update.session.session_id

    async def vote(self, session_id: str, decision: str, members) -> None:
        for member in members:
            await self.coordinator.submit_vote(session_id, member, decision)


async def _make_harness(committee, store, clock) -> Harness:
    coordinator = CommitteeCoordinator(committee, store, clock=clock)
    tracker = ComplianceTracker(store, clock=clock)
    gates = PhaseGateController(coordinator, tracker, store, clock=clock)
    await tracker.create_ledger(
        [ComplianceRequirement(
            requirement_id="review",
            severity=Severity.BLOCKING,
            check_type="manual_attestation",
            remediation="Close the open defects",
        )],
        ledger_id="L1",
    )
    await gates.open_gate("P1", "L1", 0.7, phase=WorkflowPhase.RESEARCH_DESIGN)
    return Harness(coordinator, tracker, gates, clock)


async def _awaiting(h: Harness, threshold: float = 0.6) -> str:
    await h.gates.start("P1")
    sid = await h.session(threshold)
    await h.gates.request_approval("P1", sid)
    return sid


# ── Phase catalogue ────────────────────────────────────────────────


class TestPhases:
    def test_sequence(self):
        assert PHASE_SEQUENCE[0] == WorkflowPhase.REQUIREMENTS_CLARIFICATION
        assert next_phase(WorkflowPhase.RESEARCH_DESIGN) == WorkflowPhase.IMPLEMENTATION_PLANNING
        assert next_phase(WorkflowPhase.DEPLOYMENT_VALIDATION) is None

    def test_display_names(self):
        assert display_name(WorkflowPhase.RESEARCH_DESIGN) == "Research & Design"
        assert display_name(None) == "Completed"

    def test_criteria_and_actions(self):
        assert len(approval_criteria(WorkflowPhase.TASK_EXECUTION)) == 4
        assert approval_criteria(None) == ["Phase requirements met"]
        assert "Generate the task breakdown" in next_phase_actions(
            WorkflowPhase.RESEARCH_DESIGN,
        )
        assert "Conduct project retrospective" in next_phase_actions(
            WorkflowPhase.DEPLOYMENT_VALIDATION,
        )

    def test_phase_gate_id(self):
        assert phase_gate_id("wf", WorkflowPhase.QUALITY_ASSURANCE) == "wf:quality_assurance"

    def test_default_requirements(self):
        [requirement] = default_requirements(WorkflowPhase.IMPLEMENTATION_PLANNING)
        assert requirement.requirement_id == "implementation_planning.criteria"
        assert requirement.severity == Severity.BLOCKING
        assert requirement.check_type == "criteria_checklist"
        assert "Timeline established" in requirement.remediation


# ── Lifecycle ──────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_open_gate(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        gate = h.gates.get_gate("P1")
        assert gate.state == GateState.NOT_STARTED
        assert gate.ledger_id == "L1"
        assert gate.history == []

    @pytest.mark.asyncio
    async def test_full_path_to_completed(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        started = await h.gates.start("P1")
        assert started.gate.state == GateState.IN_PROGRESS
        assert [e.type for e in started.events] == [EventType.PHASE_GATE_CHANGED]

        await h.record(passed=True)
        sid = await h.session()
        awaiting = await h.gates.request_approval("P1", sid)
        assert awaiting.gate.state == GateState.AWAITING_APPROVAL
        assert awaiting.gate.session_id == sid

        await h.vote(sid, "approve", ["alice", "bob", "carol"])
        update = await h.gates.evaluate("P1")

        assert update.completed
        assert update.gate.state == GateState.COMPLETED
        event = update.events[-1]
        assert event.status == "completed"
        assert event.data["old_state"] == "awaiting_approval"
        assert event.data["phase"] == WorkflowPhase.RESEARCH_DESIGN
        assert [t.to_state for t in update.gate.history] == [
            GateState.IN_PROGRESS, GateState.AWAITING_APPROVAL, GateState.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_already_approved_session_completes_on_request(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        await h.record(passed=True)
        await h.gates.start("P1")
        sid = await h.session()
        await h.vote(sid, "approve", ["alice", "bob", "carol"])

        update = await h.gates.request_approval("P1", sid)

        assert update.gate.state == GateState.COMPLETED
        assert len(update.transitions) == 2

    @pytest.mark.asyncio
    async def test_evaluate_without_change_emits_nothing(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        await h.record(passed=True)
        await _awaiting(h)
        update = await h.gates.evaluate("P1")
        assert update.transitions == []
        assert update.events == []

    @pytest.mark.asyncio
    async def test_illegal_transitions(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        sid = await h.session()
        with pytest.raises(InvalidTransitionError):
            await h.gates.request_approval("P1", sid)
        await h.gates.start("P1")
        with pytest.raises(InvalidTransitionError):
            await h.gates.start("P1")
        assert h.gates.get_gate("P1").state == GateState.IN_PROGRESS


# ── Combined check ─────────────────────────────────────────────────


class TestCombinedCheck:
    @pytest.mark.asyncio
    async def test_compliance_regression_blocks_approval(self, committee, store, clock):
        """An approval never masks a violation recorded after it."""
        h = await _make_harness(committee, store, clock)
        await h.record(passed=True)
        sid = await _awaiting(h)

        await h.vote(sid, "approve", ["alice", "bob", "carol"])
        await h.record(passed=False)
        update = await h.gates.evaluate("P1")

        assert update.gate.state == GateState.BLOCKED
        assert not update.completed
        assert update.gate.last_decision is not None
        assert not update.gate.last_decision.passed

        await h.record(passed=True)
        update = await h.gates.evaluate("P1")
        assert [t.to_state for t in update.transitions] == [
            GateState.AWAITING_APPROVAL, GateState.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_unevaluated_blocking_requirement_blocks(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        await _awaiting(h)
        gate = h.gates.get_gate("P1")
        assert gate.state == GateState.BLOCKED
        assert "Blocking requirement review not yet evaluated" in gate.history[-1].reason

    @pytest.mark.asyncio
    async def test_rejected_session_fails_gate(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        await h.record(passed=True)
        sid = await _awaiting(h, threshold=1.0)
        await h.vote(sid, "reject", ["alice"])

        update = await h.gates.evaluate("P1")

        assert update.gate.state == GateState.FAILED
        assert update.transitions[0].reason == "Decision session rejected"

    @pytest.mark.asyncio
    async def test_blocked_gate_fails_on_rejection(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        await h.record(passed=False)
        sid = await _awaiting(h, threshold=1.0)
        assert h.gates.get_gate("P1").state == GateState.BLOCKED

        await h.vote(sid, "reject", ["bob"])
        update = await h.gates.evaluate("P1")
        assert update.gate.state == GateState.FAILED

    @pytest.mark.asyncio
    async def test_expired_session_fails_gate(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        await h.record(passed=True)
        sid = await _awaiting(h)

        clock.advance(120)
        update = await h.gates.evaluate("P1")

        assert update.gate.state == GateState.FAILED
        assert h.coordinator.get_status(sid).status == SessionStatus.EXPIRED
        assert [str(e.type) for e in update.events] == [
            "decision_resolved", "phase_gate_changed",
        ]

    @pytest.mark.asyncio
    async def test_terminal_gate_ignores_evaluation(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        await h.record(passed=True)
        sid = await _awaiting(h, threshold=1.0)
        await h.vote(sid, "reject", ["alice"])
        await h.gates.evaluate("P1")

        await h.record(passed=False)
        update = await h.gates.evaluate("P1")
        assert update.transitions == []
        assert update.gate.state == GateState.FAILED


# ── Reads, errors and reload ───────────────────────────────────────


class TestController:
    @pytest.mark.asyncio
    async def test_open_gate_errors(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        with pytest.raises(ConfigurationError):
            await h.gates.open_gate("P1", "L1", 0.7)
        with pytest.raises(ConfigurationError):
            await h.gates.open_gate("P2", "L1", 1.5)
        with pytest.raises(UnknownLedgerError):
            await h.gates.open_gate("P2", "missing", 0.7)

    @pytest.mark.asyncio
    async def test_unknown_ids(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        with pytest.raises(UnknownGateError):
            await h.gates.start("nope")
        with pytest.raises(UnknownGateError):
            h.gates.get_status("nope")
        await h.gates.start("P1")
        with pytest.raises(UnknownSessionError):
            await h.gates.request_approval("P1", "no-such-session")

    @pytest.mark.asyncio
    async def test_status_reasons(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        status = h.gates.get_status("P1")
        assert status.state == GateState.NOT_STARTED
        assert "No decision session requested" in status.reasons
        assert "Blocking requirement review not yet evaluated" in status.reasons

        await h.record(passed=True)
        sid = await _awaiting(h)
        status = h.gates.get_status("P1")
        assert status.session_status == SessionStatus.PENDING
        assert status.reasons == [f"Decision session {sid} is pending"]
        assert status.compliance.passed

    @pytest.mark.asyncio
    async def test_gate_lookups(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        await h.record(passed=True)
        sid = await _awaiting(h)
        assert h.gates.gates_for_session(sid) == ["P1"]
        assert h.gates.gates_for_ledger("L1") == ["P1"]
        assert [g.phase_id for g in h.gates.list_gates()] == ["P1"]

    @pytest.mark.asyncio
    async def test_reload(self, committee, store, clock):
        h = await _make_harness(committee, store, clock)
        await h.record(passed=True)
        sid = await _awaiting(h)

        coordinator = CommitteeCoordinator(committee, store, clock=clock)
        tracker = ComplianceTracker(store, clock=clock)
        gates = PhaseGateController(coordinator, tracker, store, clock=clock)
        await coordinator.load()
        await tracker.load()
        assert await gates.load() == 1

        assert gates.get_gate("P1").model_dump() == h.gates.get_gate("P1").model_dump()
        await coordinator.submit_vote(sid, "alice", "approve")
        await coordinator.submit_vote(sid, "bob", "approve")
        await coordinator.submit_vote(sid, "carol", "approve")
        update = await gates.evaluate("P1")
        assert update.gate.state == GateState.COMPLETED

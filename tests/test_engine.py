"""Tests for conclave.engine.WorkflowEngine, the workflow-scoped facade."""

from datetime import timedelta

import pytest

from conclave.engine import WorkflowEngine
from conclave.errors import (
    ConfigurationError,
    EngineNotLoadedError,
    InvalidTransitionError,
    SessionClosedError,
)
from conclave.events import OUTBOX_NAMESPACE, EventType
from conclave.gate.phases import approval_criteria
from conclave.schemas.committee import SessionStatus
from conclave.schemas.engine import EngineConfig, PhasePolicy
from conclave.schemas.gate import GateState, WorkflowPhase

DESIGN = WorkflowPhase.RESEARCH_DESIGN
DESIGN_GATE = "wf-test:research_design"
DESIGN_LEDGER = "wf-test:research_design:ledger"


# ── Factories ──────────────────────────────────────────────────────


async def _make_engine(store, committee, clock, **config) -> WorkflowEngine:
    engine = WorkflowEngine(store, committee, EngineConfig(**config), clock=clock)
    await engine.load()
    return engine


async def _design_gate_awaiting(engine: WorkflowEngine, criteria_met=None) -> str:
    """Open and start the design gate, run its checklist, request approval."""
    await engine.open_phase_gate(phase=DESIGN)
    await engine.start_phase(DESIGN_GATE)
    criteria = approval_criteria(DESIGN)
    await engine.run_compliance_check(
        DESIGN_LEDGER,
        "research_design.criteria",
        {"criteria": criteria, "criteria_met": criteria if criteria_met is None else criteria_met},
    )
    gate = await engine.request_phase_approval(DESIGN_GATE, created_by="alice")
    return gate.session_id


class TestLoading:
    @pytest.mark.asyncio
    async def test_operations_require_load(self, store, committee, clock):
        engine = WorkflowEngine(store, committee, clock=clock)
        with pytest.raises(EngineNotLoadedError):
            await engine.create_approval_request()
        with pytest.raises(EngineNotLoadedError):
            engine.list_phase_gates()

    @pytest.mark.asyncio
    async def test_connect_and_reopen(self, tmp_path, committee, clock):
        db_path = str(tmp_path / "engine.db")
        engine = await WorkflowEngine.connect("wf-a", committee, db_path=db_path, clock=clock)
        session = await engine.create_approval_request(created_by="alice")
        await engine.close()

        reopened = await WorkflowEngine.connect("wf-a", committee, db_path=db_path, clock=clock)
        try:
            assert reopened.workflow_id == "wf-a"
            assert reopened.get_session_status(session.session_id).status == SessionStatus.PENDING
        finally:
            await reopened.close()


class TestDecisions:
    @pytest.mark.asyncio
    async def test_request_uses_config_defaults(self, store, committee, clock):
        engine = await _make_engine(
            store, committee, clock, default_threshold=0.5, default_timeout_seconds=30,
        )
        session = await engine.create_approval_request(target="spec.md")
        assert session.request.domain == "design"
        assert session.request.threshold == 0.5
        assert session.deadline == clock.now + timedelta(seconds=30)

    @pytest.mark.asyncio
    async def test_events_reach_listeners(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)
        received = []
        engine.add_listener(received.append)

        session = await engine.create_approval_request(threshold=0.2)
        await engine.submit_vote(session.session_id, "alice", "approve")

        assert [str(e.type) for e in received] == [
            "decision_requested", "vote_recorded", "decision_resolved",
        ]
        assert await store.keys(OUTBOX_NAMESPACE) == []

    @pytest.mark.asyncio
    async def test_async_listener(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)
        received = []

        async def listener(event):
            received.append(event.entity_id)

        engine.add_listener(listener)
        session = await engine.create_approval_request()
        assert received == [session.session_id]

        engine.remove_listener(listener)
        await engine.create_approval_request()
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_failed_delivery_is_redelivered_on_load(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)

        def broken(event):
            raise ConnectionError("notifier offline")

        engine.add_listener(broken)
        session = await engine.create_approval_request()
        assert len(await store.keys(OUTBOX_NAMESPACE)) == 1

        restarted = WorkflowEngine(store, committee, clock=clock)
        received = []
        restarted.add_listener(received.append)
        await restarted.load()

        assert [e.entity_id for e in received] == [session.session_id]
        assert received[0].type == EventType.DECISION_REQUESTED
        assert await store.keys(OUTBOX_NAMESPACE) == []

    @pytest.mark.asyncio
    async def test_restart_after_commit_redelivers_and_catches_up(
        self, store, committee, clock, monkeypatch,
    ):
        engine = await _make_engine(store, committee, clock)
        sid = await _design_gate_awaiting(engine)
        for member in ("alice", "bob", "carol"):
            await engine.submit_vote(sid, member, "approve")

        async def process_died(events):
            raise RuntimeError("process died")

        monkeypatch.setattr(engine.dispatcher, "deliver", process_died)
        with pytest.raises(RuntimeError):
            await engine.submit_vote(sid, "dave", "approve")
        assert len(await store.keys(OUTBOX_NAMESPACE)) == 2
        assert engine.gates.get_gate(DESIGN_GATE).state == GateState.AWAITING_APPROVAL

        restarted = WorkflowEngine(store, committee, clock=clock)
        received = []
        restarted.add_listener(received.append)
        await restarted.load()

        assert {str(e.type) for e in received[:2]} == {"vote_recorded", "decision_resolved"}
        assert [(str(e.type), e.status) for e in received[2:]] == [
            ("phase_gate_changed", "completed"),
        ]
        assert await store.keys(OUTBOX_NAMESPACE) == []
        assert restarted.get_session_status(sid).status == SessionStatus.APPROVED
        assert restarted.gates.get_gate(DESIGN_GATE).state == GateState.COMPLETED
        assert "wf-test:implementation_planning" in {
            g.phase_id for g in restarted.list_phase_gates()
        }


class TestPhaseFlow:
    @pytest.mark.asyncio
    async def test_open_phase_gate_creates_default_ledger(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)
        gate = await engine.open_phase_gate(phase=DESIGN)
        assert gate.phase_id == DESIGN_GATE
        assert gate.ledger_id == DESIGN_LEDGER
        assert gate.min_score == 0.7
        ledger = engine.get_ledger(DESIGN_LEDGER)
        assert [r.requirement_id for r in ledger.requirements] == ["research_design.criteria"]

    @pytest.mark.asyncio
    async def test_open_phase_gate_needs_ids(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)
        with pytest.raises(ConfigurationError):
            await engine.open_phase_gate()
        with pytest.raises(ConfigurationError):
            await engine.open_phase_gate(phase_id="custom")

    @pytest.mark.asyncio
    async def test_request_before_start_creates_no_session(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)
        await engine.open_phase_gate(phase=DESIGN)
        with pytest.raises(InvalidTransitionError):
            await engine.request_phase_approval(DESIGN_GATE)
        assert engine.coordinator.list_sessions() == []
        assert engine.gates.get_gate(DESIGN_GATE).state == GateState.NOT_STARTED

    @pytest.mark.asyncio
    async def test_phase_policy_overrides(self, store, committee, clock):
        engine = await _make_engine(
            store, committee, clock,
            phases={DESIGN: PhasePolicy(threshold=0.4, min_score=0.9)},
        )
        sid = await _design_gate_awaiting(engine)
        assert engine.get_session_status(sid).request.threshold == 0.4
        assert engine.gates.get_gate(DESIGN_GATE).min_score == 0.9

    @pytest.mark.asyncio
    async def test_approval_completes_gate_and_opens_next(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)
        received = []
        engine.add_listener(received.append)
        sid = await _design_gate_awaiting(engine)
        assert engine.gates.get_gate(DESIGN_GATE).state == GateState.AWAITING_APPROVAL

        for member in ("alice", "bob", "carol", "dave"):
            await engine.submit_vote(sid, member, "approve")

        assert engine.gates.get_gate(DESIGN_GATE).state == GateState.COMPLETED
        following = engine.gates.get_gate("wf-test:implementation_planning")
        assert following.state == GateState.NOT_STARTED
        assert following.ledger_id == "wf-test:implementation_planning:ledger"
        completed = [
            e for e in received
            if e.type == EventType.PHASE_GATE_CHANGED and e.status == "completed"
        ]
        assert [e.entity_id for e in completed] == [DESIGN_GATE]

        status = await engine.get_phase_gate_status(DESIGN_GATE)
        assert status.reasons == []
        assert status.session_status == SessionStatus.APPROVED

    @pytest.mark.asyncio
    async def test_auto_open_disabled(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock, auto_open_next_phase=False)
        sid = await _design_gate_awaiting(engine)
        for member in ("alice", "bob", "carol", "dave"):
            await engine.submit_vote(sid, member, "approve")

        assert [g.phase_id for g in engine.list_phase_gates()] == [DESIGN_GATE]

    @pytest.mark.asyncio
    async def test_unmet_criteria_block_then_remediate(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)
        criteria = approval_criteria(DESIGN)
        sid = await _design_gate_awaiting(engine, criteria_met=criteria[:2])
        assert engine.gates.get_gate(DESIGN_GATE).state == GateState.BLOCKED

        for member in ("alice", "bob", "carol", "dave"):
            await engine.submit_vote(sid, member, "approve")
        assert engine.gates.get_gate(DESIGN_GATE).state == GateState.BLOCKED

        clock.advance(1)
        await engine.run_compliance_check(
            DESIGN_LEDGER,
            "research_design.criteria",
            {"criteria": criteria, "criteria_met": criteria},
        )
        assert engine.gates.get_gate(DESIGN_GATE).state == GateState.COMPLETED

    @pytest.mark.asyncio
    async def test_rejection_fails_gate(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)
        sid = await _design_gate_awaiting(engine)
        await engine.submit_vote(sid, "alice", "reject")
        await engine.submit_vote(sid, "bob", "reject")

        assert engine.get_session_status(sid).status == SessionStatus.REJECTED
        assert engine.gates.get_gate(DESIGN_GATE).state == GateState.FAILED
        assert len(engine.list_phase_gates()) == 1

    @pytest.mark.asyncio
    async def test_cancel_fails_gate(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)
        sid = await _design_gate_awaiting(engine)
        await engine.cancel_approval_request(sid, "alice", "re-scoping")
        assert engine.gates.get_gate(DESIGN_GATE).state == GateState.FAILED


class TestExpiry:
    @pytest.mark.asyncio
    async def test_vote_after_deadline_fails_gate(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)
        received = []
        engine.add_listener(received.append)
        sid = await _design_gate_awaiting(engine)

        clock.advance(300)
        with pytest.raises(SessionClosedError):
            await engine.submit_vote(sid, "alice", "approve")

        assert engine.get_session_status(sid).status == SessionStatus.EXPIRED
        assert engine.gates.get_gate(DESIGN_GATE).state == GateState.FAILED
        assert received[-1].type == EventType.PHASE_GATE_CHANGED
        assert received[-1].status == "failed"

    @pytest.mark.asyncio
    async def test_sweep_fails_waiting_gates(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)
        sid = await _design_gate_awaiting(engine)

        clock.advance(301)
        updates = await engine.sweep_expired()

        assert [u.session.session_id for u in updates] == [sid]
        assert engine.gates.get_gate(DESIGN_GATE).state == GateState.FAILED
        assert await engine.sweep_expired() == []

    @pytest.mark.asyncio
    async def test_status_read_applies_lazy_expiry(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)
        await _design_gate_awaiting(engine)

        clock.advance(600)
        status = await engine.get_phase_gate_status(DESIGN_GATE)

        assert status.state == GateState.FAILED
        assert status.session_status == SessionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_check_expiry_before_deadline(self, store, committee, clock):
        engine = await _make_engine(store, committee, clock)
        session = await engine.create_approval_request()
        clock.advance(10)
        record = await engine.check_expiry(session.session_id)
        assert record.status == SessionStatus.PENDING

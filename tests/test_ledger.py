"""Tests for conclave.compliance.ledger.ComplianceLedger."""

from datetime import UTC, datetime, timedelta

import pytest

from conclave.compliance.ledger import ComplianceLedger
from conclave.errors import InvariantViolationError, UnknownRequirementError
from conclave.schemas.compliance import (
    ComplianceLedgerRecord,
    ComplianceRequirement,
    ComplianceResult,
    GateVerdict,
    Severity,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


# ── Factories ──────────────────────────────────────────────────────


def _requirement(requirement_id: str, severity: Severity, **overrides) -> ComplianceRequirement:
    defaults = {
        "requirement_id": requirement_id,
        "severity": severity,
        "check_type": "manual_attestation",
        "remediation": f"Fix {requirement_id}",
    }
    defaults.update(overrides)
    return ComplianceRequirement(**defaults)


def _result(requirement_id: str, passed: bool, score: float, offset: float = 0.0,
            **overrides) -> ComplianceResult:
    defaults = {
        "requirement_id": requirement_id,
        "passed": passed,
        "score": score,
        "findings": () if passed else (f"{requirement_id} failed",),
        "timestamp": T0 + timedelta(seconds=offset),
    }
    defaults.update(overrides)
    return ComplianceResult(**defaults)


def _make_ledger(**overrides) -> ComplianceLedger:
    requirements = overrides.pop("requirements", [
        _requirement("security", Severity.BLOCKING),
        _requirement("docs", Severity.INFO),
        _requirement("style", Severity.INFO),
    ])
    return ComplianceLedger("ledger-1", requirements, created_at=T0, **overrides)


class TestScoring:
    def test_scenario_d_blocking_failure(self):
        ledger = _make_ledger()
        ledger.record(_result("security", False, 0.0))
        ledger.record(_result("docs", True, 1.0))
        ledger.record(_result("style", True, 1.0))

        assert ledger.score == pytest.approx(0.4)
        decision = ledger.gate_decision(0.7)
        assert decision.verdict == GateVerdict.BLOCKED
        assert [v.requirement_id for v in decision.blocking_violations] == ["security"]

        # The violation blocks even when the score clears the minimum
        assert ledger.gate_decision(0.3).verdict == GateVerdict.BLOCKED

    def test_empty_ledger_scores_zero(self):
        ledger = _make_ledger(requirements=[_requirement("docs", Severity.INFO)])
        assert ledger.score == 0.0
        assert ledger.gate_decision(0.0).passed

    def test_passing_ledger(self):
        ledger = _make_ledger()
        ledger.record(_result("security", True, 1.0))
        ledger.record(_result("docs", True, 0.5))
        ledger.record(_result("style", True, 1.0))
        assert ledger.score == pytest.approx(0.9)
        decision = ledger.gate_decision(0.7)
        assert decision.passed
        assert decision.reasons == []

    def test_low_score_blocks(self):
        ledger = _make_ledger()
        ledger.record(_result("security", True, 0.5))
        decision = ledger.gate_decision(0.7)
        assert not decision.passed
        assert decision.reasons == ["Compliance score 0.50 below minimum 0.70"]

    def test_pending_blocking_requirement_blocks(self):
        ledger = _make_ledger()
        ledger.record(_result("docs", True, 1.0))
        decision = ledger.gate_decision(0.5)
        assert not decision.passed
        assert "Blocking requirement security not yet evaluated" in decision.reasons
        assert [r.requirement_id for r in ledger.pending_requirements()] == ["security", "style"]

    def test_info_failure_is_not_a_violation(self):
        ledger = _make_ledger()
        ledger.record(_result("security", True, 1.0))
        ledger.record(_result("docs", False, 0.0))
        assert ledger.violations == []

    def test_warning_failure_is_a_non_blocking_violation(self):
        ledger = _make_ledger(requirements=[_requirement("lint", Severity.WARNING)])
        ledger.record(_result("lint", False, 0.8))
        assert [v.severity for v in ledger.violations] == [Severity.WARNING]
        assert ledger.violations[0].remediation == "Fix lint"
        assert ledger.gate_decision(0.7).passed


class TestRecording:
    def test_duplicate_result_is_noop(self):
        ledger = _make_ledger()
        result = _result("security", False, 0.0)
        assert ledger.record(result) is True
        assert ledger.record(result) is False
        assert len(ledger.results) == 1

    def test_later_result_supersedes(self):
        ledger = _make_ledger()
        ledger.record(_result("security", False, 0.0, offset=0))
        ledger.record(_result("security", True, 1.0, offset=5))
        assert ledger.current_result("security").passed
        assert ledger.violations == []
        assert len(ledger.results) == 2

    def test_older_result_does_not_become_current(self):
        ledger = _make_ledger()
        ledger.record(_result("security", True, 1.0, offset=5))
        ledger.record(_result("security", False, 0.0, offset=0))
        assert ledger.current_result("security").passed
        assert len(ledger.results) == 2

    def test_unknown_requirement(self):
        ledger = _make_ledger()
        with pytest.raises(UnknownRequirementError):
            ledger.record(_result("perf", True, 1.0))
        assert ledger.results == []

    def test_duplicate_requirement_ids(self):
        with pytest.raises(InvariantViolationError):
            _make_ledger(requirements=[
                _requirement("docs", Severity.INFO),
                _requirement("docs", Severity.BLOCKING),
            ])


class TestSerialization:
    def test_derived_state_recomputed_from_record(self):
        ledger = _make_ledger()
        ledger.record(_result("security", False, 0.0))
        ledger.record(_result("docs", True, 1.0))

        record = ComplianceLedgerRecord.model_validate(ledger.to_record().model_dump(mode="json"))
        restored = ComplianceLedger.from_record(record)
        assert restored.score == pytest.approx(ledger.score)
        assert [v.requirement_id for v in restored.violations] == ["security"]
        assert restored.created_at == T0

    def test_record_with_unknown_requirement_is_invariant_violation(self):
        record = ComplianceLedgerRecord(
            ledger_id="ledger-1",
            requirements=[_requirement("docs", Severity.INFO)],
            results=[_result("ghost", True, 1.0)],
        )
        with pytest.raises(InvariantViolationError):
            ComplianceLedger.from_record(record)

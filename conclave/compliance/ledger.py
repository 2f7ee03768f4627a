"""Append-only compliance ledger.

Holds the requirement catalogue and the ordered result sequence of one
ledger id. The aggregate score and the open violations are derived
values: they are recomputed from the result sequence on every append and
on load, never adjusted incrementally.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime

from conclave.errors import InvariantViolationError, UnknownRequirementError
from conclave.schemas.compliance import (
    ComplianceLedgerRecord,
    ComplianceRequirement,
    ComplianceResult,
    GateDecision,
    GateVerdict,
    Severity,
    Violation,
)


class ComplianceLedger:
    """Result history and derived compliance state for one ledger id."""

    def __init__(
        self,
        ledger_id: str,
        requirements: list[ComplianceRequirement],
        results: list[ComplianceResult] | None = None,
        created_at: datetime | None = None,
    ) -> None:
        self.ledger_id = ledger_id
        self.created_at = created_at or datetime.now(UTC)
        self._requirements: dict[str, ComplianceRequirement] = {}
        for requirement in requirements:
            if requirement.requirement_id in self._requirements:
                raise InvariantViolationError(
                    f"Duplicate requirement {requirement.requirement_id} in ledger {ledger_id}"
                )
            self._requirements[requirement.requirement_id] = requirement
        self._results: list[ComplianceResult] = list(results or [])
        self._seen = {r.dedupe_key for r in self._results}
        self._current: dict[str, ComplianceResult] = {}
        self._violations: list[Violation] = []
        self._score = 0.0
        self._recompute()

    @property
    def requirements(self) -> list[ComplianceRequirement]:
        return list(self._requirements.values())

    @property
    def results(self) -> list[ComplianceResult]:
        return list(self._results)

    @property
    def score(self) -> float:
        """Severity-weighted mean of the current result per requirement."""
        return self._score

    @property
    def violations(self) -> list[Violation]:
        return list(self._violations)

    def requirement(self, requirement_id: str) -> ComplianceRequirement:
        try:
            return self._requirements[requirement_id]
        except KeyError:
            raise UnknownRequirementError(requirement_id) from None

    def current_result(self, requirement_id: str) -> ComplianceResult | None:
        return self._current.get(requirement_id)

    def pending_requirements(self) -> list[ComplianceRequirement]:
        """Requirements that have no result yet."""
        return [r for rid, r in self._requirements.items() if rid not in self._current]

    def record(self, result: ComplianceResult) -> bool:
        """Append a result.

        Recording the same (requirement id, timestamp) twice is a no-op.

        Returns:
            True if the result was appended.

        Raises:
            UnknownRequirementError: The requirement is not in the catalogue.
        """
        self.requirement(result.requirement_id)
        if result.dedupe_key in self._seen:
            return False
        self._results.append(result)
        self._seen.add(result.dedupe_key)
        self._recompute()
        return True

    def gate_decision(self, min_score: float) -> GateDecision:
        """Pass iff the score reaches ``min_score`` and no blocking issue is open.

        A blocking requirement that has not been evaluated yet holds the
        gate as well.
        """
        blocking = [v for v in self._violations if v.severity == Severity.BLOCKING]
        reasons = [
            f"Blocking violation {v.requirement_id}: "
            + ("; ".join(v.findings) if v.findings else "check failed")
            for v in blocking
        ]
        for requirement in self.pending_requirements():
            if requirement.severity == Severity.BLOCKING:
                reasons.append(
                    f"Blocking requirement {requirement.requirement_id} not yet evaluated"
                )
        if self._score < min_score:
            reasons.append(f"Compliance score {self._score:.2f} below minimum {min_score:.2f}")

        return GateDecision(
            verdict=GateVerdict.BLOCKED if reasons else GateVerdict.PASS,
            score=self._score,
            min_score=min_score,
            blocking_violations=blocking,
            reasons=reasons,
        )

    def _recompute(self) -> None:
        current: dict[str, ComplianceResult] = {}
        for result in self._results:
            if result.requirement_id not in self._requirements:
                raise InvariantViolationError(
                    f"Ledger {self.ledger_id} holds a result for unknown "
                    f"requirement {result.requirement_id}"
                )
            if not 0.0 <= result.score <= 1.0 or math.isnan(result.score):
                raise InvariantViolationError(
                    f"Ledger {self.ledger_id} holds out-of-range score {result.score}"
                )
            # Latest by timestamp; equal timestamps keep the later append
            previous = current.get(result.requirement_id)
            if previous is None or result.timestamp >= previous.timestamp:
                current[result.requirement_id] = result

        weighted = 0.0
        total_weight = 0
        violations: list[Violation] = []
        for requirement_id, result in current.items():
            requirement = self._requirements[requirement_id]
            weight = requirement.severity.weight
            weighted += result.score * weight
            total_weight += weight
            if not result.passed and requirement.severity != Severity.INFO:
                violations.append(Violation(
                    requirement_id=requirement_id,
                    severity=requirement.severity,
                    findings=list(result.findings),
                    remediation=requirement.remediation,
                    detected_at=result.timestamp,
                ))

        self._current = current
        self._violations = violations
        self._score = weighted / total_weight if total_weight else 0.0

    # ── Serialization ────────────────────────────────────────────

    def to_record(self) -> ComplianceLedgerRecord:
        return ComplianceLedgerRecord(
            ledger_id=self.ledger_id,
            requirements=self.requirements,
            results=self.results,
            created_at=self.created_at,
        )

    @classmethod
    def from_record(cls, record: ComplianceLedgerRecord) -> ComplianceLedger:
        return cls(
            record.ledger_id,
            record.requirements,
            results=record.results,
            created_at=record.created_at,
        )

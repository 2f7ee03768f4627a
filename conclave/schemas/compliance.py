"""Compliance schemas.

Requirements, check outcomes, immutable results, derived violations,
gate decisions and the persisted ledger snapshot.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Severity(StrEnum):
    """How strongly a failing requirement affects the gate."""

    INFO = "info"
    WARNING = "warning"
    BLOCKING = "blocking"

    @property
    def weight(self) -> int:
        return SEVERITY_WEIGHTS[self]


SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.BLOCKING: 3,
    Severity.WARNING: 2,
    Severity.INFO: 1,
}


class GateVerdict(StrEnum):
    PASS = "pass"
    BLOCKED = "blocked"


class ComplianceRequirement(BaseModel):
    """A requirement validated by a registered check type."""

    model_config = ConfigDict(frozen=True)

    requirement_id: str = Field(description="Unique requirement identifier")
    description: str = Field(default="", description="Human description")
    severity: Severity = Field(default=Severity.WARNING)
    check_type: str = Field(description="Registered check implementation key")
    remediation: str = Field(
        default="", description="Guidance attached to violations of this requirement",
    )


class CheckOutcome(BaseModel):
    """What a check capability returns for one context."""

    passed: bool
    score: float = Field(description="Score in [0, 1]")
    findings: list[str] = Field(default_factory=list)


class ComplianceResult(BaseModel):
    """Outcome of one check run. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    requirement_id: str
    passed: bool
    score: float = Field(ge=0.0, le=1.0)
    findings: tuple[str, ...] = Field(default=())
    check_type: str = Field(default="")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def dedupe_key(self) -> tuple[str, datetime]:
        return (self.requirement_id, self.timestamp)


class Violation(BaseModel):
    """A failing warning or blocking requirement awaiting remediation."""

    requirement_id: str
    severity: Severity
    findings: list[str] = Field(default_factory=list)
    remediation: str = Field(default="")
    detected_at: datetime


class GateDecision(BaseModel):
    """Compliance verdict for a ledger against a minimum score."""

    verdict: GateVerdict
    score: float
    min_score: float
    blocking_violations: list[Violation] = Field(default_factory=list)
    reasons: list[str] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.verdict == GateVerdict.PASS


class ComplianceLedgerRecord(BaseModel):
    """Serializable snapshot of a compliance ledger.

    Only the requirement catalogue and the result sequence are stored;
    score and violations are recomputed on load.
    """

    ledger_id: str
    requirements: list[ComplianceRequirement] = Field(default_factory=list)
    results: list[ComplianceResult] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

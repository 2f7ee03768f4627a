"""Phase gate schemas.

Defines the workflow phases, gate states, transition history entries,
the persisted PhaseGateRecord and the PhaseGateStatus read model.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from conclave.schemas.committee import SessionStatus
from conclave.schemas.compliance import GateDecision


class WorkflowPhase(StrEnum):
    """Phases of the specification-driven workflow, in order."""

    REQUIREMENTS_CLARIFICATION = "requirements_clarification"
    RESEARCH_DESIGN = "research_design"
    IMPLEMENTATION_PLANNING = "implementation_planning"
    TASK_EXECUTION = "task_execution"
    QUALITY_ASSURANCE = "quality_assurance"
    DEPLOYMENT_VALIDATION = "deployment_validation"


class GateState(StrEnum):
    """Phase gate lifecycle.

    COMPLETED and FAILED are terminal. BLOCKED is entered when compliance
    reports blocking problems and returns to AWAITING_APPROVAL once they
    are remediated.
    """

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    AWAITING_APPROVAL = "awaiting_approval"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (GateState.COMPLETED, GateState.FAILED)


class GateTransition(BaseModel):
    """One entry in a gate's transition history."""

    from_state: GateState
    to_state: GateState
    at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    reason: str = Field(default="")


class PhaseGateRecord(BaseModel):
    """Serializable snapshot of a phase gate."""

    phase_id: str = Field(description="Unique gate identifier")
    phase: WorkflowPhase | None = Field(
        default=None, description="Workflow phase this gate guards, if any",
    )
    state: GateState = Field(default=GateState.NOT_STARTED)
    session_id: str | None = Field(
        default=None, description="Decision session that must approve the phase",
    )
    ledger_id: str = Field(description="Compliance ledger consulted at the gate")
    min_score: float = Field(ge=0.0, le=1.0, description="Minimum aggregate compliance score")
    history: list[GateTransition] = Field(default_factory=list)
    last_decision: GateDecision | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PhaseGateStatus(BaseModel):
    """Combined read model returned by get_phase_gate_status."""

    phase_id: str
    phase: WorkflowPhase | None = None
    state: GateState
    session_id: str | None = None
    session_status: SessionStatus | None = None
    compliance: GateDecision | None = None
    reasons: list[str] = Field(default_factory=list)

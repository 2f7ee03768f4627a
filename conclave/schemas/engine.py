"""Engine configuration schemas.

Loaded from defaults.toml and overridable by callers. Holds the default
consensus policy, compliance threshold, sweep cadence, and per-phase
policy overrides.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from conclave.schemas.gate import WorkflowPhase


class PhasePolicy(BaseModel):
    """Policy overrides for a specific workflow phase."""

    domain: str = Field(default="", description="Approver domain (empty = engine default)")
    threshold: float | None = Field(
        default=None, gt=0.0, le=1.0,
        description="Approval threshold override",
    )
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="Decision timeout override",
    )
    min_score: float | None = Field(
        default=None, ge=0.0, le=1.0,
        description="Minimum compliance score override",
    )


class EngineConfig(BaseModel):
    """Top-level engine configuration."""

    default_domain: str = Field(
        default="design", description="Approver domain used when none is given",
    )
    default_threshold: float = Field(
        default=0.66, gt=0.0, le=1.0,
        description="Fraction of eligible members required to approve",
    )
    default_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Seconds before an open decision expires",
    )
    min_compliance_score: float = Field(
        default=0.7, ge=0.0, le=1.0,
        description="Minimum aggregate compliance score for a gate to pass",
    )
    sweep_interval_seconds: float = Field(
        default=5.0, gt=0, description="Seconds between background expiry sweeps",
    )
    state_db_path: str = Field(
        default="~/.conclave/state.db", description="SQLite state database path",
    )
    auto_open_next_phase: bool = Field(
        default=True,
        description="Open the next workflow phase's gate when a phase completes",
    )
    phases: dict[WorkflowPhase, PhasePolicy] = Field(
        default_factory=dict, description="Per-phase policy overrides",
    )

    def policy_for(self, phase: WorkflowPhase | None) -> PhasePolicy:
        """Return the effective policy for a phase, filled from defaults."""
        override = self.phases.get(phase) if phase else None
        override = override or PhasePolicy()
        return PhasePolicy(
            domain=override.domain or self.default_domain,
            threshold=(
                override.threshold
                if override.threshold is not None
                else self.default_threshold
            ),
            timeout_seconds=(
                override.timeout_seconds
                if override.timeout_seconds is not None
                else self.default_timeout_seconds
            ),
            min_score=(
                override.min_score
                if override.min_score is not None
                else self.min_compliance_score
            ),
        )

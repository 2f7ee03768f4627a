"""Committee and decision schemas.

Defines committee members, approval requests, votes, quorum tallies,
and the persisted DecisionSessionRecord snapshot.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class VoteDecision(StrEnum):
    """A member's position on an approval request."""

    APPROVE = "approve"
    REJECT = "reject"
    ABSTAIN = "abstain"


class QuorumOutcome(StrEnum):
    """Result of evaluating a vote set against a threshold."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SessionStatus(StrEnum):
    """Lifecycle status of a decision session.

    PENDING is the only non-terminal status. EXPIRED counts as a rejection
    for gating but is recorded distinctly for audit. CANCELLED is reached
    only when the request's creator withdraws it.
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != SessionStatus.PENDING


class CommitteeMember(BaseModel):
    """A reviewer entitled to vote within one or more approval domains."""

    model_config = ConfigDict(frozen=True)

    member_id: str = Field(description="Unique member identity")
    display_name: str = Field(default="", description="Human-friendly name")
    roles: tuple[str, ...] = Field(
        default=(), description="Role and expertise tags (e.g. 'architect', 'security')",
    )
    domains: tuple[str, ...] = Field(
        default=(), description="Approval-authority domains this member may vote in",
    )

    def can_approve(self, domain: str) -> bool:
        return domain in self.domains


class ApprovalRequest(BaseModel):
    """The question being decided. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    target: str = Field(default="", description="Phase or artifact identifier under review")
    domain: str = Field(description="Required-approver domain")
    threshold: float = Field(
        gt=0.0, le=1.0,
        description="Fraction of eligible members that must approve",
    )
    timeout_seconds: float = Field(gt=0, description="Seconds until the session expires")
    eligible_members: tuple[str, ...] = Field(
        description="Member ids entitled to vote, frozen at creation",
    )
    created_by: str = Field(
        default="system", description="Identity allowed to withdraw the request",
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def deadline(self) -> datetime:
        return self.created_at + timedelta(seconds=self.timeout_seconds)


class Vote(BaseModel):
    """A single recorded vote. Immutable."""

    model_config = ConfigDict(frozen=True)

    member_id: str = Field(description="Voting member identity")
    decision: VoteDecision = Field(description="approve, reject or abstain")
    rationale: str | None = Field(default=None, description="Optional reasoning")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class QuorumTally(BaseModel):
    """Counts and fractions behind a quorum outcome."""

    approve: int = Field(default=0, ge=0)
    reject: int = Field(default=0, ge=0)
    abstain: int = Field(default=0, ge=0)
    eligible: int = Field(default=0, ge=0)
    approve_fraction: float = Field(default=0.0, ge=0.0, le=1.0)
    reject_fraction: float = Field(default=0.0, ge=0.0, le=1.0)
    outcome: QuorumOutcome = Field(default=QuorumOutcome.PENDING)

    @property
    def cast(self) -> int:
        return self.approve + self.reject + self.abstain


class DecisionSessionRecord(BaseModel):
    """Serializable snapshot of a decision session.

    Sufficient to reconstruct the session after a restart. ``votes`` holds
    the active vote per member; ``vote_log`` and ``late_votes`` are
    audit-only histories.
    """

    session_id: str = Field(description="Unique session identifier")
    request: ApprovalRequest
    status: SessionStatus = Field(default=SessionStatus.PENDING)
    votes: dict[str, Vote] = Field(
        default_factory=dict, description="Active vote per member id",
    )
    vote_log: list[Vote] = Field(
        default_factory=list, description="Every vote submission, in arrival order",
    )
    late_votes: list[Vote] = Field(
        default_factory=list, description="Votes submitted after the session closed",
    )
    tally: QuorumTally = Field(default_factory=QuorumTally)
    created_at: datetime
    deadline: datetime
    resolved_at: datetime | None = None
    resolution_reason: str = Field(default="")

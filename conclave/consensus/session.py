"""Decision session: one approval request in flight.

A DecisionSession tracks the request, its deadline, the vote ledger and
the current quorum tally. It is mutated only through vote submission,
expiry and cancellation, and its status never leaves a terminal value.
Serialization of concurrent callers is the coordinator's job.
"""

from __future__ import annotations

from datetime import datetime

from conclave.consensus.voting import VoteLedger, evaluate_quorum
from conclave.errors import InvariantViolationError
from conclave.schemas.committee import (
    ApprovalRequest,
    DecisionSessionRecord,
    QuorumOutcome,
    QuorumTally,
    SessionStatus,
    Vote,
)

_OUTCOME_STATUS = {
    QuorumOutcome.APPROVED: SessionStatus.APPROVED,
    QuorumOutcome.REJECTED: SessionStatus.REJECTED,
}


class DecisionSession:
    """Stateful tracker for a single ApprovalRequest."""

    def __init__(
        self,
        session_id: str,
        request: ApprovalRequest,
        *,
        status: SessionStatus = SessionStatus.PENDING,
        ledger: VoteLedger | None = None,
        late_votes: list[Vote] | None = None,
        tally: QuorumTally | None = None,
        resolved_at: datetime | None = None,
        resolution_reason: str = "",
    ) -> None:
        self.session_id = session_id
        self.request = request
        self._status = status
        self._ledger = ledger or VoteLedger()
        self._late_votes: list[Vote] = list(late_votes or [])
        self._tally = tally or evaluate_quorum(
            self._ledger.active().values(),
            len(request.eligible_members),
            request.threshold,
        )
        self.resolved_at = resolved_at
        self.resolution_reason = resolution_reason

    # ── Read side ────────────────────────────────────────────────

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_pending(self) -> bool:
        return self._status == SessionStatus.PENDING

    @property
    def created_at(self) -> datetime:
        return self.request.created_at

    @property
    def deadline(self) -> datetime:
        return self.request.deadline

    @property
    def tally(self) -> QuorumTally:
        return self._tally

    @property
    def votes(self) -> dict[str, Vote]:
        return self._ledger.active()

    def is_eligible(self, member_id: str) -> bool:
        return member_id in self.request.eligible_members

    def is_due(self, now: datetime) -> bool:
        """True once the deadline has passed while still pending."""
        return self.is_pending and now >= self.deadline

    # ── Mutations ────────────────────────────────────────────────

    def submit(self, vote: Vote) -> bool:
        """Record a vote and re-run quorum evaluation.

        Returns:
            True if the vote resolved the session.
        """
        if not self.is_pending:
            raise InvariantViolationError(
                f"Vote applied to closed session {self.session_id} ({self._status})"
            )
        self._ledger.record(vote)
        self._tally = evaluate_quorum(
            self._ledger.active().values(),
            len(self.request.eligible_members),
            self.request.threshold,
        )
        status = _OUTCOME_STATUS.get(self._tally.outcome)
        if status is None:
            return False
        self._close(
            status,
            vote.timestamp,
            f"{self._tally.approve} approve, {self._tally.reject} reject, "
            f"{self._tally.abstain} abstain of {self._tally.eligible} eligible",
        )
        return True

    def record_late(self, vote: Vote) -> None:
        """Keep a vote that arrived after closure, for audit only."""
        self._late_votes.append(vote)

    def expire(self, now: datetime) -> bool:
        """Expire the session if it is still pending past its deadline."""
        if not self.is_due(now):
            return False
        self._close(SessionStatus.EXPIRED, now, "Deadline reached before quorum")
        return True

    def cancel(self, now: datetime, reason: str = "") -> bool:
        """Withdraw a pending request. Returns False if already closed."""
        if not self.is_pending:
            return False
        self._close(SessionStatus.CANCELLED, now, reason or "Withdrawn by creator")
        return True

    def _close(self, status: SessionStatus, at: datetime, reason: str) -> None:
        if not self.is_pending:
            raise InvariantViolationError(
                f"Session {self.session_id} cannot move from {self._status} to {status}"
            )
        self._status = status
        self.resolved_at = at
        self.resolution_reason = reason

    # ── Serialization ────────────────────────────────────────────

    def to_record(self) -> DecisionSessionRecord:
        return DecisionSessionRecord(
            session_id=self.session_id,
            request=self.request,
            status=self._status,
            votes=self._ledger.active(),
            vote_log=self._ledger.log,
            late_votes=list(self._late_votes),
            tally=self._tally,
            created_at=self.created_at,
            deadline=self.deadline,
            resolved_at=self.resolved_at,
            resolution_reason=self.resolution_reason,
        )

    @classmethod
    def from_record(cls, record: DecisionSessionRecord) -> DecisionSession:
        return cls(
            record.session_id,
            record.request,
            status=record.status,
            ledger=VoteLedger(active=record.votes, log=record.vote_log),
            late_votes=record.late_votes,
            tally=record.tally,
            resolved_at=record.resolved_at,
            resolution_reason=record.resolution_reason,
        )

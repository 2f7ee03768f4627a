"""Vote recording and quorum evaluation.

Provides the append-only VoteLedger kept by every decision session and
evaluate_quorum, the pure function that maps a vote set and a policy to
pending, approved or rejected.
"""

from __future__ import annotations

from collections.abc import Iterable
from fractions import Fraction

from conclave.errors import ConfigurationError
from conclave.schemas.committee import QuorumOutcome, QuorumTally, Vote, VoteDecision


def validate_policy(eligible_count: int, threshold: float) -> None:
    """Raise ConfigurationError for an unusable quorum policy."""
    if eligible_count <= 0:
        raise ConfigurationError(
            f"Quorum needs at least one eligible member (got {eligible_count})"
        )
    if not 0 < threshold <= 1:
        raise ConfigurationError(f"Threshold must be in (0, 1], got {threshold}")


def evaluate_quorum(
    votes: Iterable[Vote],
    eligible_count: int,
    threshold: float,
) -> QuorumTally:
    """Count votes and decide whether the request is resolved.

    Approved when approvals reach ``threshold`` of the eligible members.
    Rejected when rejections exceed ``1 - threshold`` (approval can no
    longer be reached even if every remaining member approves). Anything
    else is pending, including a full ballot short of approval: members
    may still change their vote until the session expires. Abstentions
    count as cast but never toward either fraction. The result depends
    only on the vote set, not its order.

    Args:
        votes: Active votes, at most one per member.
        eligible_count: Number of members entitled to vote.
        threshold: Required approval fraction, 0 < threshold <= 1.

    Returns:
        QuorumTally with counts, fractions and the outcome.

    Raises:
        ConfigurationError: If eligible_count is not positive or the
            threshold is outside (0, 1].
    """
    validate_policy(eligible_count, threshold)

    counts = {decision: 0 for decision in VoteDecision}
    for vote in votes:
        counts[vote.decision] += 1

    approve = counts[VoteDecision.APPROVE]
    reject = counts[VoteDecision.REJECT]
    abstain = counts[VoteDecision.ABSTAIN]

    # Compare exactly so that 3/5 >= 0.6 is not lost to float rounding
    required = Fraction(str(threshold))
    approve_fraction = Fraction(approve, eligible_count)
    reject_fraction = Fraction(reject, eligible_count)

    if approve_fraction >= required:
        outcome = QuorumOutcome.APPROVED
    elif reject_fraction > 1 - required:
        outcome = QuorumOutcome.REJECTED
    else:
        outcome = QuorumOutcome.PENDING

    return QuorumTally(
        approve=approve,
        reject=reject,
        abstain=abstain,
        eligible=eligible_count,
        approve_fraction=min(float(approve_fraction), 1.0),
        reject_fraction=min(float(reject_fraction), 1.0),
        outcome=outcome,
    )


class VoteLedger:
    """Append-only record of the votes cast for one decision.

    Every submission is kept in ``log`` for audit. ``active`` holds the
    latest vote per member: a resubmission overwrites the previous vote
    unless its timestamp is older (last-write-wins by timestamp).
    """

    def __init__(
        self,
        active: dict[str, Vote] | None = None,
        log: list[Vote] | None = None,
    ) -> None:
        self._active: dict[str, Vote] = dict(active or {})
        self._log: list[Vote] = list(log or [])

    def record(self, vote: Vote) -> bool:
        """Append a vote and make it active if it is the latest.

        Returns:
            True if the vote became the member's active vote.
        """
        self._log.append(vote)
        current = self._active.get(vote.member_id)
        if current is not None and vote.timestamp < current.timestamp:
            return False
        self._active[vote.member_id] = vote
        return True

    def active(self) -> dict[str, Vote]:
        """Snapshot of the active vote per member."""
        return dict(self._active)

    @property
    def log(self) -> list[Vote]:
        return list(self._log)

    def get(self, member_id: str) -> Vote | None:
        return self._active.get(member_id)

    def __len__(self) -> int:
        return len(self._active)

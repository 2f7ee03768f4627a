"""Committee coordinator for a workflow instance.

Owns every DecisionSession of one workflow instance: creates them from
approval requests, serializes vote submission, expiry and cancellation
per session, persists each committed snapshot, and returns the outbound
events each operation produced.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field

from pydantic import ValidationError

from conclave.clock import Clock, utc_now
from conclave.consensus.committee import Committee
from conclave.consensus.session import DecisionSession
from conclave.consensus.voting import validate_policy
from conclave.errors import (
    ConfigurationError,
    EntityFaultedError,
    InvariantViolationError,
    SessionClosedError,
    UnauthorizedMemberError,
    UnknownSessionError,
)
from conclave.events import (
    EngineEvent,
    decision_requested,
    decision_resolved,
    outbox_entries,
    vote_recorded,
)
from conclave.locks import EntityLocks
from conclave.persistence.store import StateStore
from conclave.schemas.committee import (
    ApprovalRequest,
    DecisionSessionRecord,
    SessionStatus,
    Vote,
    VoteDecision,
)

logger = logging.getLogger(__name__)

SESSION_NAMESPACE = "session"


@dataclass
class SessionUpdate:
    """Committed session snapshot plus the events the operation produced."""

    session: DecisionSessionRecord
    events: list[EngineEvent] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.session.status.is_terminal


class CommitteeCoordinator:
    """Manages the active decision sessions of one workflow instance.

    Every mutation runs under the session's lock against a working copy
    of the last committed snapshot; the copy replaces the snapshot only
    after it was written to the store. Reads return committed snapshots
    and never wait for a lock.
    """

    def __init__(
        self,
        committee: Committee,
        store: StateStore,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._committee = committee
        self._store = store
        self._clock = clock
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))
        self._active: dict[str, DecisionSessionRecord] = {}
        self._history: dict[str, DecisionSessionRecord] = {}
        self._locks = EntityLocks()
        self._faulted: dict[str, str] = {}

    @property
    def committee(self) -> Committee:
        return self._committee

    async def load(self) -> int:
        """Load persisted sessions. Returns the number loaded."""
        payloads = await self._store.list(SESSION_NAMESPACE)
        for payload in payloads:
            self._place(DecisionSessionRecord.model_validate(payload))
        logger.info(
            "Loaded %d sessions (%d active) for workflow %s",
            len(payloads), len(self._active), self._store.workflow_id,
        )
        return len(payloads)

    # ── Creation ─────────────────────────────────────────────────

    async def create_request(
        self,
        domain: str,
        threshold: float,
        timeout_seconds: float,
        eligible_members: Iterable[str] | None = None,
        target: str = "",
        created_by: str = "system",
    ) -> SessionUpdate:
        """Open a decision session for a new approval request.

        Eligible members default to every roster member authorized for
        ``domain``. Nothing is created if the policy is invalid.

        Raises:
            ConfigurationError: Zero eligible members, a threshold outside
                (0, 1], a non-positive timeout, or an unknown/unauthorized
                member in ``eligible_members``.
        """
        eligible = self._committee.resolve_eligible(domain, eligible_members)
        validate_policy(len(eligible), threshold)
        if timeout_seconds <= 0:
            raise ConfigurationError(f"Timeout must be positive, got {timeout_seconds}")

        try:
            request = ApprovalRequest(
                target=target,
                domain=domain,
                threshold=threshold,
                timeout_seconds=timeout_seconds,
                eligible_members=eligible,
                created_by=created_by,
                created_at=self._clock(),
            )
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc

        session_id = self._new_id()
        session = DecisionSession(session_id, request)
        event = decision_requested(
            session_id,
            target=target,
            domain=domain,
            eligible_members=list(eligible),
            deadline=session.deadline.isoformat(),
        )
        async with self._lock(session_id):
            record = await self._commit(session, [event])

        logger.info(
            "Opened session %s for '%s' (domain=%s, threshold=%.2f, eligible=%d)",
            session_id, target, domain, threshold, len(eligible),
        )
        return SessionUpdate(record, [event])

    # ── Mutations ────────────────────────────────────────────────

    async def submit_vote(
        self,
        session_id: str,
        member_id: str,
        decision: VoteDecision | str,
        rationale: str | None = None,
    ) -> SessionUpdate:
        """Record a member's vote and resolve the session if quorum is reached.

        The expiry check runs first, so a vote at or after the deadline
        cannot flip an expired session; it is kept for audit only.

        Raises:
            UnknownSessionError: No such session.
            SessionClosedError: The session is no longer pending.
            UnauthorizedMemberError: The member is not eligible.
        """
        self._require(session_id)
        decision = VoteDecision(decision)

        async with self._lock(session_id):
            self._check_faulted(session_id)
            session = self._working_copy(session_id)
            now = self._clock()
            events: list[EngineEvent] = []

            try:
                if session.expire(now):
                    events.append(self._resolution_event(session))

                if not session.is_pending:
                    if session.is_eligible(member_id):
                        session.record_late(Vote(
                            member_id=member_id,
                            decision=decision,
                            rationale=rationale,
                            timestamp=now,
                        ))
                        await self._commit(session, events)
                    elif events:
                        await self._commit(session, events)
                    raise SessionClosedError(session_id, session.status, events)

                if not session.is_eligible(member_id):
                    raise UnauthorizedMemberError(
                        session_id, member_id,
                        f"not eligible in domain '{session.request.domain}'",
                    )

                vote = Vote(
                    member_id=member_id,
                    decision=decision,
                    rationale=rationale,
                    timestamp=now,
                )
                resolved = session.submit(vote)
                events.append(vote_recorded(
                    session_id, member_id, decision, now,
                    approve=session.tally.approve,
                    reject=session.tally.reject,
                    abstain=session.tally.abstain,
                ))
                if resolved:
                    events.append(self._resolution_event(session))
                record = await self._commit(session, events)
            except InvariantViolationError as exc:
                self._fault(session_id, exc)
                raise

        logger.debug("Vote %s by %s on session %s", decision, member_id, session_id)
        return SessionUpdate(record, events)

    async def check_expiry(self, session_id: str) -> SessionUpdate:
        """Expire the session if its deadline has passed while pending."""
        self._require(session_id)
        async with self._lock(session_id):
            events = await self._expire_locked(session_id)
            return SessionUpdate(self._record(session_id), events)

    async def cancel_request(
        self, session_id: str, requested_by: str, reason: str = "",
    ) -> SessionUpdate:
        """Withdraw a pending request. Only its creator may do so.

        Raises:
            UnknownSessionError: No such session.
            SessionClosedError: The session already resolved or expired.
            UnauthorizedMemberError: ``requested_by`` did not create it.
        """
        self._require(session_id)
        async with self._lock(session_id):
            events = await self._expire_locked(session_id)
            session = self._working_copy(session_id)
            if not session.is_pending:
                raise SessionClosedError(session_id, session.status, events)
            if requested_by != session.request.created_by:
                raise UnauthorizedMemberError(
                    session_id, requested_by, "only the creator may withdraw a request",
                )
            session.cancel(self._clock(), reason)
            event = self._resolution_event(session)
            record = await self._commit(session, [event])
            events.append(event)

        logger.info("Session %s cancelled by %s", session_id, requested_by)
        return SessionUpdate(record, events)

    async def sweep_expired(self) -> list[SessionUpdate]:
        """Expire every overdue pending session.

        Sessions resolved concurrently are skipped: the status guard under
        the session lock turns the expiry into a no-op.
        """
        now = self._clock()
        due = [
            sid for sid, record in self._active.items()
            if sid not in self._faulted and now >= record.deadline
        ]
        updates: list[SessionUpdate] = []
        for session_id in due:
            update = await self.check_expiry(session_id)
            if update.events:
                updates.append(update)
        if updates:
            logger.info("Expiry sweep closed %d sessions", len(updates))
        return updates

    # ── Reads ────────────────────────────────────────────────────

    def get_status(self, session_id: str) -> DecisionSessionRecord:
        """Read-only snapshot of the last committed state."""
        self._require(session_id)
        return self._record(session_id).model_copy(deep=True)

    def list_sessions(self, include_history: bool = True) -> list[DecisionSessionRecord]:
        records = list(self._active.values())
        if include_history:
            records.extend(self._history.values())
        return sorted(records, key=lambda r: r.created_at)

    def is_faulted(self, session_id: str) -> bool:
        return session_id in self._faulted

    @asynccontextmanager
    async def hold(
        self, session_id: str,
    ) -> AsyncIterator[tuple[DecisionSessionRecord, list[EngineEvent]]]:
        """Hold the session lock for a consistent cross-entity read.

        Applies lazy expiry first and yields the committed snapshot with
        any events that produced.
        """
        self._require(session_id)
        async with self._lock(session_id):
            self._check_faulted(session_id)
            events = await self._expire_locked(session_id)
            yield self._record(session_id), events

    # ── Internals ────────────────────────────────────────────────

    def _lock(self, session_id: str) -> AbstractAsyncContextManager[None]:
        return self._locks.hold(session_id)

    def _require(self, session_id: str) -> None:
        if session_id not in self._active and session_id not in self._history:
            raise UnknownSessionError(session_id)

    def _record(self, session_id: str) -> DecisionSessionRecord:
        record = self._active.get(session_id) or self._history.get(session_id)
        if record is None:
            raise UnknownSessionError(session_id)
        return record

    def _working_copy(self, session_id: str) -> DecisionSession:
        return DecisionSession.from_record(self._record(session_id).model_copy(deep=True))

    def _check_faulted(self, session_id: str) -> None:
        if session_id in self._faulted:
            raise EntityFaultedError(session_id, self._faulted[session_id])

    def _fault(self, session_id: str, exc: Exception) -> None:
        self._faulted[session_id] = str(exc)
        logger.error("Session %s halted after invariant violation: %s", session_id, exc)

    async def _expire_locked(self, session_id: str) -> list[EngineEvent]:
        record = self._record(session_id)
        if session_id in self._faulted or record.status.is_terminal:
            return []
        session = DecisionSession.from_record(record.model_copy(deep=True))
        if not session.expire(self._clock()):
            return []
        event = self._resolution_event(session)
        await self._commit(session, [event])
        logger.info(
            "Session %s expired with %d/%d approvals",
            session_id, session.tally.approve, session.tally.eligible,
        )
        return [event]

    async def _commit(
        self, session: DecisionSession, events: Iterable[EngineEvent] = (),
    ) -> DecisionSessionRecord:
        """Persist the snapshot and the events it produced atomically."""
        record = session.to_record()
        await self._store.write_many([
            (SESSION_NAMESPACE, session.session_id, record.model_dump(mode="json")),
            *outbox_entries(events),
        ])
        self._place(record)
        return record

    def _place(self, record: DecisionSessionRecord) -> None:
        if record.status.is_terminal:
            self._active.pop(record.session_id, None)
            self._history[record.session_id] = record
        else:
            self._active[record.session_id] = record

    @staticmethod
    def _resolution_event(session: DecisionSession) -> EngineEvent:
        if session.status in (SessionStatus.APPROVED, SessionStatus.REJECTED):
            logger.info(
                "Session %s resolved %s (%s)",
                session.session_id, session.status, session.resolution_reason,
            )
        return decision_resolved(
            session.session_id,
            session.status,
            target=session.request.target,
            reason=session.resolution_reason,
            approve=session.tally.approve,
            reject=session.tally.reject,
            abstain=session.tally.abstain,
            eligible=session.tally.eligible,
        )

"""Error taxonomy for the Conclave engine.

Recoverable conditions (unknown ids, unauthorized votes, closed sessions,
illegal gate transitions) are surfaced to the caller with no state change.
ConfigurationError is raised at creation time before anything is applied.
InvariantViolationError marks a programming error and faults only the
entity it was raised for.
"""

from __future__ import annotations


class ConclaveError(Exception):
    """Base exception for all engine errors."""


class ConfigurationError(ConclaveError):
    """Invalid policy or configuration (zero eligible members, bad threshold)."""


class UnknownEntityError(ConclaveError):
    """A session, ledger, gate or requirement id was not found."""

    kind = "entity"

    def __init__(self, entity_id: str) -> None:
        self.entity_id = entity_id
        super().__init__(f"Unknown {self.kind}: {entity_id}")


class UnknownSessionError(UnknownEntityError):
    kind = "session"


class UnknownLedgerError(UnknownEntityError):
    kind = "ledger"


class UnknownGateError(UnknownEntityError):
    kind = "phase gate"


class UnknownRequirementError(UnknownEntityError):
    kind = "requirement"


class UnauthorizedMemberError(ConclaveError):
    """The member may not act on this session."""

    def __init__(self, session_id: str, member_id: str, reason: str = "") -> None:
        self.session_id = session_id
        self.member_id = member_id
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Member '{member_id}' is not authorized for session {session_id}{detail}"
        )


class SessionClosedError(ConclaveError):
    """The session is no longer pending; carries its final status.

    ``events`` holds anything the refused call still produced, such as the
    expiry of a session whose deadline passed just before the vote.
    """

    def __init__(self, session_id: str, status: str, events: list | None = None) -> None:
        self.session_id = session_id
        self.status = status
        self.events = list(events or [])
        super().__init__(f"Session {session_id} is closed ({status})")


class CheckExecutionFailure(ConclaveError):
    """A pluggable compliance check raised or returned malformed output.

    Only ever raised inside the check runner, which converts it into a
    failing ComplianceResult.
    """

    def __init__(self, check_type: str, reason: str) -> None:
        self.check_type = check_type
        self.reason = reason
        super().__init__(f"Check '{check_type}' failed to execute: {reason}")


class InvalidTransitionError(ConclaveError):
    """A phase gate was asked to make a transition its state does not allow."""

    def __init__(self, phase_id: str, state: str, action: str) -> None:
        self.phase_id = phase_id
        self.state = state
        self.action = action
        super().__init__(f"Cannot {action} phase gate {phase_id} in state '{state}'")


class InvariantViolationError(ConclaveError):
    """An internal invariant was broken. Fatal for the affected entity."""


class EntityFaultedError(ConclaveError):
    """The entity was halted by an earlier invariant violation."""

    def __init__(self, entity_id: str, reason: str) -> None:
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Entity {entity_id} is faulted: {reason}")


class EngineNotLoadedError(ConclaveError):
    """Operations were attempted before persisted state was loaded."""

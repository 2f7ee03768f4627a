"""Committee roster.

Holds the committee members for a workflow instance and answers
eligibility questions by approval domain. Members are immutable for the
lifetime of any session referencing them.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from conclave.errors import ConfigurationError
from conclave.schemas.committee import CommitteeMember


class Committee:
    """Read-only set of committee members keyed by member id."""

    def __init__(self, members: Iterable[CommitteeMember] = ()) -> None:
        self._members: dict[str, CommitteeMember] = {}
        for member in members:
            if member.member_id in self._members:
                raise ConfigurationError(f"Duplicate committee member: {member.member_id}")
            self._members[member.member_id] = member

    def __contains__(self, member_id: object) -> bool:
        return member_id in self._members

    def __iter__(self) -> Iterator[CommitteeMember]:
        return iter(self._members.values())

    def __len__(self) -> int:
        return len(self._members)

    def get(self, member_id: str) -> CommitteeMember | None:
        return self._members.get(member_id)

    def eligible_for(self, domain: str) -> list[str]:
        """Member ids authorized to vote in ``domain``, in roster order."""
        return [m.member_id for m in self._members.values() if m.can_approve(domain)]

    def domains(self) -> list[str]:
        """Every approval domain covered by at least one member."""
        seen: dict[str, None] = {}
        for member in self._members.values():
            for domain in member.domains:
                seen.setdefault(domain, None)
        return list(seen)

    def resolve_eligible(
        self, domain: str, member_ids: Iterable[str] | None = None,
    ) -> tuple[str, ...]:
        """Validate an explicit eligible list, or derive one from the roster.

        Raises:
            ConfigurationError: If a listed member is unknown or not
                authorized for the domain, or nobody is eligible.
        """
        if member_ids is None:
            eligible = self.eligible_for(domain)
        else:
            eligible = []
            for member_id in member_ids:
                member = self._members.get(member_id)
                if member is None:
                    raise ConfigurationError(f"Unknown committee member: {member_id}")
                if not member.can_approve(domain):
                    raise ConfigurationError(
                        f"Member '{member_id}' has no approval authority in '{domain}'"
                    )
                if member_id not in eligible:
                    eligible.append(member_id)

        if not eligible:
            raise ConfigurationError(f"No eligible members for domain '{domain}'")
        return tuple(eligible)

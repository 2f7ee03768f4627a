"""Shared fixtures: a controllable clock, a small committee and a state store."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from conclave.consensus.committee import Committee
from conclave.persistence.database import close_db, init_db
from conclave.persistence.store import StateStore
from conclave.schemas.committee import CommitteeMember

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def make_committee() -> Committee:
    """Five design reviewers plus one security-only member."""
    members = [
        CommitteeMember(member_id=mid, display_name=mid.title(), domains=("design",))
        for mid in ("alice", "bob", "carol", "dave", "erin")
    ]
    members.append(
        CommitteeMember(member_id="mallory", display_name="Mallory", domains=("security",))
    )
    return Committee(members)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def committee() -> Committee:
    return make_committee()


@pytest_asyncio.fixture
async def db(tmp_path):
    conn = await init_db(str(tmp_path / "state.db"))
    yield conn
    await close_db(conn)


@pytest.fixture
def store(db) -> StateStore:
    return StateStore(db, "wf-test")

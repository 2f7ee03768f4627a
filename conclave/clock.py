"""Injectable time source.

Every engine component takes a ``clock`` callable so deadlines and
timestamps can be driven deterministically in tests.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)

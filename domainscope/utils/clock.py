# domainscope/utils/clock.py
"""
Injectable time source.

Everything that reads the time (cache expiry, rate-limit windows, deadlines,
WHOIS day counts) takes a Clock so tests can drive time explicitly.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone


def now_utc() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class Clock:
    """Wall clock for timestamps, monotonic clock for intervals."""

    def now(self) -> datetime:
        return now_utc()

    def monotonic(self) -> float:
        return time.monotonic()


class SystemClock(Clock):
    pass


SYSTEM_CLOCK = SystemClock()

"""Time access for the monitor.

Everything that reads the time or waits goes through a ``Clock`` so a run
can be driven deterministically in tests.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Protocol

from .utils import utc_now


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current UTC time (timezone aware)."""
        ...

    def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    def now(self) -> datetime:
        return utc_now()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class Deadline:
    """Wall-clock limit after which no new unit of work may start.

    The deadline is cooperative: callers check it between units of work and
    work already in flight is allowed to finish.
    """

    def __init__(self, expires_at: datetime, clock: Clock) -> None:
        self.expires_at = expires_at
        self._clock = clock

    @classmethod
    def after(cls, seconds: float, clock: Clock) -> "Deadline":
        return cls(clock.now() + timedelta(seconds=seconds), clock)

    def remaining_seconds(self) -> float:
        return max(0.0, (self.expires_at - self._clock.now()).total_seconds())

    def remaining_ms(self) -> int:
        return int(self.remaining_seconds() * 1000)

    def expired(self) -> bool:
        return self._clock.now() >= self.expires_at

"""
Time sources for the staking engine.

The engine only needs ``now() -> int`` (whole seconds since the epoch,
non-decreasing).  ``ManualClock`` is used by the tests and the demo to
step time deterministically.
"""

from __future__ import annotations

import time


class SystemClock:
    """Wall-clock seconds."""

    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000) -> None:
        self._now = start

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("ManualClock cannot run backwards")
        self._now += seconds
        return self._now

    def set(self, ts: int) -> None:
        if ts < self._now:
            raise ValueError("ManualClock cannot run backwards")
        self._now = ts

"""Time sources for the reconciler.

Everything that needs "now" (verification timestamps, expiry checks, the
sweeper, ledger retention) reads it from an injected clock, so tests and
local runs can move time forward without waiting.
"""

import threading
import time


class Clock:
    """Wall clock in Unix milliseconds."""

    def now_millis(self) -> int:
        return int(time.time() * 1000)


class ManualClock(Clock):
    """Clock that only moves when told to.

    Args:
        start_millis: Initial time, defaults to the current wall time
    """

    def __init__(self, start_millis: int = None) -> None:
        self._lock = threading.Lock()
        self._now_millis = int(time.time() * 1000) if start_millis is None else start_millis

    def now_millis(self) -> int:
        with self._lock:
            return self._now_millis

    def advance(self, days: int = 0, hours: int = 0, minutes: int = 0, seconds: int = 0, millis: int = 0) -> int:
        """Move time forward.

        Returns:
            The new current time

        Raises:
            ValueError: If any component is negative
        """
        if min(days, hours, minutes, seconds, millis) < 0:
            raise ValueError("Cannot advance time backwards, negative values are not allowed.")

        delta = ((days * 24 + hours) * 60 + minutes) * 60 * 1000 + seconds * 1000 + millis
        with self._lock:
            self._now_millis += delta
            return self._now_millis

    def set(self, now_millis: int) -> None:
        """Jump to an absolute time (forwards or backwards)."""
        with self._lock:
            self._now_millis = now_millis

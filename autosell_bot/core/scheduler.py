"""Drift-free tick schedule: fire times are origin + n * interval, never now + interval."""
from __future__ import annotations

import math


class TickScheduler:
    def __init__(self, interval_sec: float, origin: float) -> None:
        if interval_sec <= 0:
            raise ValueError("interval_sec must be > 0")
        self.interval = interval_sec
        self.origin = origin

    def tick_index(self, now: float) -> int:
        """Index of the last boundary at or before `now` (-1 before the origin)."""
        if now < self.origin:
            return -1
        # Epsilon absorbs float error when `now` sits exactly on a boundary
        return int(math.floor((now - self.origin) / self.interval + 1e-9))

    def next_fire(self, now: float) -> float:
        """Smallest boundary strictly after `now`."""
        return self.origin + (self.tick_index(now) + 1) * self.interval

    def delay(self, now: float) -> float:
        return max(0.0, self.next_fire(now) - now)

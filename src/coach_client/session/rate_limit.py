"""Sliding-window limit on outbound messages."""

from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque, Optional


class SlidingWindowRateLimiter:
    """
    Allows at most `limit` sends within any trailing `window_seconds`.

    Timestamps are only recorded for sends that actually happened, so a
    message that failed to send does not consume budget.
    """

    def __init__(
        self,
        limit: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._timestamps: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def can_send(self) -> bool:
        self._prune(self._clock())
        return len(self._timestamps) < self.limit

    def record(self) -> None:
        now = self._clock()
        self._prune(now)
        self._timestamps.append(now)

    def remaining(self) -> int:
        self._prune(self._clock())
        return max(self.limit - len(self._timestamps), 0)

    def get_reset_time(self) -> Optional[float]:
        """Clock time at which the oldest recorded send leaves the window."""
        if not self._timestamps:
            return None
        return self._timestamps[0] + self.window_seconds

    def reset(self) -> None:
        self._timestamps.clear()

    def __len__(self) -> int:
        return len(self._timestamps)

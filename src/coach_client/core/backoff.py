"""Exponential backoff policy and the retry state machine that drives recovery loops."""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, List, Optional, Tuple


class RetryDecision(Enum):
    RETRY = auto()     # wait delay_ms, then attempt again
    GIVE_UP = auto()   # retry budget exhausted
    FATAL = auto()     # error is not recoverable


@dataclass(frozen=True)
class RetryStep:
    decision: RetryDecision
    delay_ms: float = 0.0


@dataclass(frozen=True)
class BackoffPolicy:
    """
    delay(n) = jitter * min(base_delay_ms * 2**n, max_delay_ms)

    `max_attempts` counts every attempt of a sequence, including the first one.
    `jitter` is an optional (low, high) multiplier range.
    """
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    max_attempts: int = 4
    jitter: Optional[Tuple[float, float]] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be non-negative")

    def delay_ms(self, retry_index: int, uniform: Callable[[float, float], float] = random.uniform) -> float:
        delay = min(self.base_delay_ms * (2 ** retry_index), self.max_delay_ms)
        if self.jitter is not None:
            delay *= uniform(*self.jitter)
        return delay

    def schedule(self) -> List[float]:
        """Un-jittered delays of a full retry sequence."""
        return [
            min(self.base_delay_ms * (2 ** n), self.max_delay_ms)
            for n in range(self.max_attempts - 1)
        ]


@dataclass
class RetryState:
    """Retry counter of one recovery sequence; reset after any success."""
    policy: BackoffPolicy
    retry_count: int = 0

    def on_failure(self, recoverable: bool) -> RetryStep:
        if not recoverable:
            return RetryStep(RetryDecision.FATAL)
        if self.retry_count + 1 >= self.policy.max_attempts:
            return RetryStep(RetryDecision.GIVE_UP)
        delay = self.policy.delay_ms(self.retry_count)
        self.retry_count += 1
        return RetryStep(RetryDecision.RETRY, delay)

    def reset(self) -> None:
        self.retry_count = 0

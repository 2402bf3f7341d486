"""Streaming session module."""

from .connection import SessionConnectionManager
from .rate_limit import SlidingWindowRateLimiter
from .types import ConnectionStatus, GenerationConfig, SessionConfig, SessionEvent, SessionMessage

__all__ = [
    "SessionConnectionManager",
    "SlidingWindowRateLimiter",
    "ConnectionStatus",
    "GenerationConfig",
    "SessionConfig",
    "SessionEvent",
    "SessionMessage",
]

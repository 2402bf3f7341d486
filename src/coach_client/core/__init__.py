"""Core module."""

from .errors import (
    AudioError,
    AudioErrorKind,
    CoachClientError,
    OperationCancelled,
    PipelineBusyError,
    SessionError,
)
from .events import EventDispatcher, Subscription
from .shutdown import CancellationToken, StopSignal

__all__ = [
    "AudioError",
    "AudioErrorKind",
    "CoachClientError",
    "OperationCancelled",
    "PipelineBusyError",
    "SessionError",
    "EventDispatcher",
    "Subscription",
    "CancellationToken",
    "StopSignal",
]

"""Error taxonomy shared by the audio pipeline and the session manager."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class CoachClientError(Exception):
    """Base class for all errors raised by coach_client."""


class AudioErrorKind(str, Enum):
    """Failure categories of the audio pipeline."""
    CONTEXT_CREATION_FAILED = "CONTEXT_CREATION_FAILED"
    STREAM_CREATION_FAILED = "STREAM_CREATION_FAILED"
    PIPELINE_SETUP_FAILED = "PIPELINE_SETUP_FAILED"
    STREAM_ENDED = "STREAM_ENDED"
    UNKNOWN = "UNKNOWN"

    @property
    def recoverable(self) -> bool:
        return self not in _FATAL_AUDIO_KINDS


_FATAL_AUDIO_KINDS = frozenset({
    AudioErrorKind.CONTEXT_CREATION_FAILED,
    AudioErrorKind.PIPELINE_SETUP_FAILED,
})


class AudioError(CoachClientError):
    """
    Audio pipeline failure.

    `recoverable` defaults to the value fixed for `kind` but may be overridden
    by the raiser.
    """

    def __init__(
        self,
        kind: AudioErrorKind,
        message: str,
        recoverable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.recoverable = kind.recoverable if recoverable is None else recoverable

    def __repr__(self) -> str:
        return f"AudioError({self.kind.value}, {self.message!r}, recoverable={self.recoverable})"


class SessionError(CoachClientError):
    """
    Streaming session failure: transport, parse or remote-reported.

    `code` is only set for errors reported by the remote service.
    """

    def __init__(self, message: str, recoverable: bool, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable
        self.code = code

    @classmethod
    def from_remote(cls, message: str, code: Optional[int]) -> "SessionError":
        # Server-side (5xx) failures are worth retrying, client errors are not
        recoverable = code is not None and code >= 500
        return cls(message or "Remote error", recoverable=recoverable, code=code)

    def __repr__(self) -> str:
        return f"SessionError({self.message!r}, recoverable={self.recoverable}, code={self.code})"


class PipelineBusyError(CoachClientError):
    """Raised when a setup is requested while another one is in progress."""


class OperationCancelled(CoachClientError):
    """Raised when cleanup() interrupts an in-flight initialize/connect."""

"""Streaming session data types."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ..core.errors import SessionError


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class GenerationConfig(BaseModel):
    """Model sampling parameters sent with the session setup."""
    temperature: Optional[float] = Field(default=0.7, ge=0.0)
    top_p: Optional[float] = Field(default=1.0, ge=0.0, le=1.0)
    top_k: Optional[int] = Field(default=40, ge=1)
    max_output_tokens: Optional[int] = Field(default=1024, ge=1)
    stop_sequences: Optional[List[str]] = None
    candidate_count: Optional[int] = Field(default=None, ge=1)


class SessionConfig(BaseModel):
    """Per-connect session parameters; generation_config overrides the manager defaults."""
    model: str = Field(..., min_length=1)
    generation_config: Optional[GenerationConfig] = None
    system_instruction: Optional[str] = None

    def with_defaults(self, defaults: GenerationConfig) -> "SessionConfig":
        overrides = (
            self.generation_config.model_dump(exclude_unset=True)
            if self.generation_config is not None
            else {}
        )
        merged = defaults.model_copy(update=overrides)
        return self.model_copy(update={"generation_config": merged})


@dataclass(frozen=True)
class QueuedMessage:
    """Serialized outbound frame waiting to be sent."""
    payload: str
    enqueued_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SessionMessage:
    """Model response text extracted from one server content frame."""
    text: str
    interrupted: bool = False
    timestamp: float = field(default_factory=time.time)


class SessionEvent(Enum):
    STATUS_CHANGE = "statusChange"
    MESSAGE = "message"
    ERROR = "error"
    INTERRUPTED = "interrupted"


SESSION_EVENT_PAYLOADS = {
    SessionEvent.STATUS_CHANGE: ConnectionStatus,
    SessionEvent.MESSAGE: SessionMessage,
    SessionEvent.ERROR: SessionError,
    SessionEvent.INTERRUPTED: type(None),
}

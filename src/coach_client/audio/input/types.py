"""Audio input subsystem data types and configuration."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Protocol, Union, runtime_checkable

import numpy as np

from ...core.errors import AudioError


class AudioStatus(str, Enum):
    INACTIVE = "inactive"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    RECOVERING = "recovering"
    ERROR = "error"


@dataclass(frozen=True)
class AudioConfig:
    """Capture configuration; immutable for the lifetime of a pipeline run."""
    sample_rate: int = 44100
    channel_count: int = 1
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    latency_hint: str = "interactive"

    def merged(self, overrides: Union["AudioConfig", Mapping[str, Any], None] = None) -> "AudioConfig":
        """Return a copy with caller overrides applied on top of these values."""
        if overrides is None:
            return self
        if isinstance(overrides, AudioConfig):
            return overrides
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown audio config keys: {sorted(unknown)}")
        return replace(self, **dict(overrides))


@dataclass(frozen=True)
class AudioMetrics:
    """Per-block signal metrics. `average` is the mean of squared samples."""
    rms: float
    peak: float
    average: float
    clipping: bool
    snr: float


@dataclass
class AudioBlock:
    """One fixed-size capture buffer; owned by the consumer once emitted."""
    samples: np.ndarray      # shape: (n_samples,) float32, channel 0
    metrics: AudioMetrics
    timestamp: float
    channel_count: int
    sample_rate: int

    @property
    def duration_s(self) -> float:
        return len(self.samples) / self.sample_rate if self.sample_rate else 0.0


class AudioEvent(Enum):
    STATUS_CHANGE = "statusChange"
    ERROR = "error"
    AUDIO_DATA = "audioData"
    METRICS_UPDATE = "metricsUpdate"


AUDIO_EVENT_PAYLOADS = {
    AudioEvent.STATUS_CHANGE: AudioStatus,
    AudioEvent.ERROR: AudioError,
    AudioEvent.AUDIO_DATA: AudioBlock,
    AudioEvent.METRICS_UPDATE: AudioMetrics,
}


BlockCallback = Callable[[np.ndarray], None]
EndedCallback = Callable[[], None]


@runtime_checkable
class CaptureStream(Protocol):
    """A started device stream delivering fixed-size blocks."""

    def set_block_callback(self, callback: Optional[BlockCallback]) -> None: ...

    def set_ended_callback(self, callback: Optional[EndedCallback]) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def close(self) -> None: ...


@runtime_checkable
class CaptureDevice(Protocol):
    """Opens capture streams honoring the requested constraints."""

    async def open(self, config: AudioConfig, block_size: int) -> CaptureStream: ...

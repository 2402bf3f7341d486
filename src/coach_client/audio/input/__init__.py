"""Audio input module."""

from .pipeline import AudioPipeline
from .types import AudioBlock, AudioConfig, AudioEvent, AudioMetrics, AudioStatus

__all__ = ["AudioPipeline", "AudioBlock", "AudioConfig", "AudioEvent", "AudioMetrics", "AudioStatus"]

"""Orchestration facade: audio pipeline -> streaming session, events forwarded outward."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import List, Optional, Set

import numpy as np

from ..audio.input.pipeline import AudioPipeline
from ..audio.input.types import AudioBlock, AudioConfig, AudioEvent, AudioMetrics, AudioStatus, CaptureDevice
from ..config.settings import CoachClientConfig
from ..session.connection import SessionConnectionManager
from ..session.rate_limit import SlidingWindowRateLimiter
from ..session.schemas import RealtimeInputMessage
from ..session.types import ConnectionStatus, GenerationConfig, SessionConfig, SessionEvent, SessionMessage
from .errors import AudioError, SessionError
from .events import EventDispatcher, Subscription

logger = logging.getLogger(__name__)


class CoachEvent(Enum):
    AUDIO_STATUS = "audioStatus"
    AUDIO_ERROR = "audioError"
    METRICS = "metrics"
    SESSION_STATUS = "sessionStatus"
    SESSION_ERROR = "sessionError"
    MESSAGE = "message"
    INTERRUPTED = "interrupted"


COACH_EVENT_PAYLOADS = {
    CoachEvent.AUDIO_STATUS: AudioStatus,
    CoachEvent.AUDIO_ERROR: AudioError,
    CoachEvent.METRICS: AudioMetrics,
    CoachEvent.SESSION_STATUS: ConnectionStatus,
    CoachEvent.SESSION_ERROR: SessionError,
    CoachEvent.MESSAGE: SessionMessage,
    CoachEvent.INTERRUPTED: type(None),
}

# Audio keeps flowing into the queue while a reconnect is pending
_FORWARDING_STATES = (ConnectionStatus.CONNECTED, ConnectionStatus.RECONNECTING)


def to_pcm16(samples: np.ndarray) -> bytes:
    """Convert float samples in [-1, 1] to little-endian 16-bit PCM."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


class Coach:
    """
    Owns exactly one AudioPipeline and one SessionConnectionManager.

    Audio blocks are batched into chunks of `chunk_seconds` before being
    framed and sent, which keeps the outbound rate under the session cap.
    """

    def __init__(
        self,
        config: CoachClientConfig,
        device: Optional[CaptureDevice] = None,
        pipeline: Optional[AudioPipeline] = None,
        manager: Optional[SessionConnectionManager] = None,
    ):
        self._config = config
        if pipeline is None and device is None:
            from ..audio.input.mic import Mic
            device = Mic(device=config.input_device)
        self._pipeline = pipeline or AudioPipeline(
            device,
            block_size=config.buffer_size,
            defaults=AudioConfig(sample_rate=config.sample_rate, channel_count=config.channel_count),
        )
        self._manager = manager or SessionConnectionManager(
            config.gemini_api_key,
            host=config.service_host,
            api_version=config.api_version,
            connect_timeout_s=config.connect_timeout_s,
            heartbeat_interval_s=config.heartbeat_interval_s,
            rate_limiter=SlidingWindowRateLimiter(limit=config.max_messages_per_minute),
        )
        self.events: EventDispatcher[CoachEvent] = EventDispatcher(COACH_EVENT_PAYLOADS, name="coach")
        self._subscriptions: List[Subscription] = []
        self._pending: List[np.ndarray] = []
        self._pending_samples = 0
        self._send_tasks: Set[asyncio.Task] = set()

    @property
    def pipeline(self) -> AudioPipeline:
        return self._pipeline

    @property
    def manager(self) -> SessionConnectionManager:
        return self._manager

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            model=self._config.model,
            generation_config=GenerationConfig(temperature=self._config.temperature),
            system_instruction=self._config.system_instruction,
        )

    async def start(self) -> None:
        """Connect the session, then start capturing. Failures are raised to the caller."""
        self._subscribe()
        await self._manager.connect(self.session_config())
        await self._pipeline.initialize()
        logger.info("Coach started")

    async def stop(self) -> None:
        await self._pipeline.cleanup()
        await self._manager.cleanup()
        for task in list(self._send_tasks):
            task.cancel()
        self._send_tasks.clear()
        self._pending.clear()
        self._pending_samples = 0
        self._unsubscribe()
        logger.info("Coach stopped")

    def _subscribe(self) -> None:
        if self._subscriptions:
            return
        audio = self._pipeline.events
        session = self._manager.events
        self._subscriptions = [
            audio.subscribe(AudioEvent.AUDIO_DATA, self._on_audio_block),
            audio.subscribe(AudioEvent.STATUS_CHANGE, lambda s: self.events.emit(CoachEvent.AUDIO_STATUS, s)),
            audio.subscribe(AudioEvent.ERROR, lambda e: self.events.emit(CoachEvent.AUDIO_ERROR, e)),
            audio.subscribe(AudioEvent.METRICS_UPDATE, lambda m: self.events.emit(CoachEvent.METRICS, m)),
            session.subscribe(SessionEvent.STATUS_CHANGE, lambda s: self.events.emit(CoachEvent.SESSION_STATUS, s)),
            session.subscribe(SessionEvent.ERROR, lambda e: self.events.emit(CoachEvent.SESSION_ERROR, e)),
            session.subscribe(SessionEvent.MESSAGE, lambda m: self.events.emit(CoachEvent.MESSAGE, m)),
            session.subscribe(SessionEvent.INTERRUPTED, lambda _: self.events.emit(CoachEvent.INTERRUPTED, None)),
        ]

    def _unsubscribe(self) -> None:
        for subscription in self._subscriptions:
            if isinstance(subscription.event, AudioEvent):
                self._pipeline.events.unsubscribe(subscription)
            else:
                self._manager.events.unsubscribe(subscription)
        self._subscriptions = []

    def _on_audio_block(self, block: AudioBlock) -> None:
        if self._manager.status not in _FORWARDING_STATES:
            self._pending.clear()
            self._pending_samples = 0
            return

        self._pending.append(block.samples)
        self._pending_samples += len(block.samples)
        if self._pending_samples < int(block.sample_rate * self._config.chunk_seconds):
            return

        chunk = np.concatenate(self._pending)
        self._pending.clear()
        self._pending_samples = 0

        frame = RealtimeInputMessage.from_pcm(to_pcm16(chunk))
        task = asyncio.ensure_future(self._send_chunk(frame))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _send_chunk(self, frame: RealtimeInputMessage) -> None:
        try:
            await self._manager.send_message(frame)
        except SessionError as e:
            logger.warning(f"Dropping audio chunk: {e.message}")

"""Audio capture pipeline with per-block metrics and automatic device recovery."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

import numpy as np

from ...core.backoff import BackoffPolicy, RetryDecision, RetryState
from ...core.errors import AudioError, AudioErrorKind, OperationCancelled, PipelineBusyError
from ...core.events import EventDispatcher
from ...core.shutdown import CancellationToken
from .metrics import compute_metrics
from .types import (
    AUDIO_EVENT_PAYLOADS,
    AudioBlock,
    AudioConfig,
    AudioEvent,
    AudioStatus,
    CaptureDevice,
    CaptureStream,
)

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_SIZE = 4096  # ~93 ms at 44.1 kHz

DEFAULT_AUDIO_BACKOFF = BackoffPolicy(
    base_delay_ms=1000,
    max_delay_ms=30000,
    max_attempts=3,
    jitter=(0.75, 1.25),
)


@dataclass
class CaptureContext:
    """Processing parameters bound to the event loop that consumes the blocks."""
    loop: asyncio.AbstractEventLoop
    sample_rate: int
    channel_count: int
    block_size: int
    latency_hint: str
    closed: bool = False

    def close(self) -> None:
        self.closed = True


class BlockProcessor:
    """
    Re-chunks incoming samples into blocks of exactly `block_size` samples.

    Devices that already deliver `block_size` samples per callback pass
    straight through.
    """

    def __init__(self, block_size: int, on_block: Callable[[np.ndarray], None]):
        self._block_size = block_size
        self._on_block = on_block
        self._pending = np.empty(0, dtype=np.float32)
        self._connected = True

    def feed(self, samples: np.ndarray) -> None:
        if not self._connected:
            return
        samples = np.asarray(samples, dtype=np.float32).ravel()
        if self._pending.size == 0 and samples.size == self._block_size:
            self._on_block(samples)
            return

        self._pending = np.concatenate((self._pending, samples))
        while self._connected and self._pending.size >= self._block_size:
            block = self._pending[: self._block_size].copy()
            self._pending = self._pending[self._block_size:]
            self._on_block(block)

    def disconnect(self) -> None:
        self._connected = False
        self._pending = np.empty(0, dtype=np.float32)


class AudioPipeline:
    """
    Owns one capture stream and turns its blocks into metrics and AudioBlocks.

    Status automaton: INACTIVE -> INITIALIZING -> ACTIVE, with RECOVERING
    between retries and ERROR as the sticky terminal state. Recoverable
    failures are retried with jittered exponential backoff; fatal ones and
    exhausted retries are raised to the initialize() caller.
    """

    def __init__(
        self,
        device: CaptureDevice,
        block_size: int = DEFAULT_BLOCK_SIZE,
        defaults: AudioConfig = AudioConfig(),
        backoff: BackoffPolicy = DEFAULT_AUDIO_BACKOFF,
        clock: Callable[[], float] = time.time,
    ):
        self._device = device
        self._block_size = block_size
        self._defaults = defaults
        self._config = defaults
        self._clock = clock
        self._status = AudioStatus.INACTIVE
        self._retry = RetryState(backoff)
        self._token = CancellationToken()
        self._context: Optional[CaptureContext] = None
        self._stream: Optional[CaptureStream] = None
        self._processor: Optional[BlockProcessor] = None
        self._recovery_task: Optional[asyncio.Task] = None
        self.events: EventDispatcher[AudioEvent] = EventDispatcher(AUDIO_EVENT_PAYLOADS, name="audio")

    @property
    def status(self) -> AudioStatus:
        return self._status

    @property
    def config(self) -> AudioConfig:
        return self._config

    @property
    def retry_count(self) -> int:
        return self._retry.retry_count

    @property
    def block_size(self) -> int:
        return self._block_size

    def get_status(self) -> AudioStatus:
        return self._status

    def get_config(self) -> AudioConfig:
        return self._config

    def is_active(self) -> bool:
        return self._status is AudioStatus.ACTIVE

    async def initialize(self, config: Union[AudioConfig, Mapping[str, Any], None] = None) -> None:
        """
        Acquire the capture stream and start emitting blocks.

        Raises:
            PipelineBusyError: another initialize or a recovery is in progress.
            AudioError: fatal failure or retries exhausted.
            OperationCancelled: cleanup() was called while this was in flight.
        """
        if self._status is AudioStatus.ACTIVE:
            logger.debug("Audio pipeline already active")
            return
        if self._status in (AudioStatus.INITIALIZING, AudioStatus.RECOVERING):
            raise PipelineBusyError(f"Audio pipeline is {self._status.value}")

        self._config = self._defaults.merged(config)
        self._retry.reset()
        self._token = CancellationToken()
        await self._run(self._config, self._token)

    async def cleanup(self) -> None:
        """Release every resource and return to INACTIVE. Safe from any state."""
        self._token.cancel()
        recovery_task, self._recovery_task = self._recovery_task, None
        if recovery_task is not None and not recovery_task.done() and recovery_task is not asyncio.current_task():
            recovery_task.cancel()
        self._release()
        self._retry.reset()
        self._set_status(AudioStatus.INACTIVE)
        logger.info("Audio pipeline cleaned up")

    async def _run(self, config: AudioConfig, token: CancellationToken) -> None:
        while True:
            token.raise_if_cancelled()
            self._set_status(AudioStatus.INITIALIZING)
            try:
                await self._setup(config, token)
            except OperationCancelled:
                raise
            except Exception as exc:
                await self._handle_failure(_as_audio_error(exc), token)
                continue

            self._retry.reset()
            self._set_status(AudioStatus.ACTIVE)
            logger.info(f"Audio pipeline active ({config.sample_rate} Hz)")
            return

    async def _handle_failure(self, error: AudioError, token: CancellationToken) -> None:
        """Emit the error, then either back off (RETRY) or raise it (FATAL / GIVE_UP)."""
        # A run superseded by cleanup() must not touch state any more
        token.raise_if_cancelled()
        step = self._retry.on_failure(error.recoverable)
        self.events.emit(AudioEvent.ERROR, error)
        self._release()

        if step.decision is RetryDecision.RETRY:
            logger.warning(
                f"Audio error {error.kind.value}, retry {self._retry.retry_count} "
                f"in {step.delay_ms:.0f} ms: {error.message}"
            )
            self._set_status(AudioStatus.RECOVERING)
            await token.sleep(step.delay_ms / 1000.0)
            return

        if step.decision is RetryDecision.GIVE_UP:
            logger.error(f"Audio recovery gave up after {self._retry.retry_count} retries: {error.message}")
        else:
            logger.error(f"Fatal audio error {error.kind.value}: {error.message}")
        self._set_status(AudioStatus.ERROR)
        raise error

    async def _setup(self, config: AudioConfig, token: CancellationToken) -> None:
        self._context = self._create_context(config)

        try:
            stream = await token.guard(self._device.open(config, self._block_size))
        except (OperationCancelled, AudioError):
            raise
        except Exception as exc:
            raise AudioError(
                AudioErrorKind.STREAM_CREATION_FAILED, f"Failed to create audio stream: {exc}"
            ) from exc

        if token.is_set():
            # cleanup() ran while the device was opening
            _close_quietly(stream)
            raise OperationCancelled("Operation cancelled by cleanup")
        self._stream = stream

        self._setup_processor()

        try:
            stream.start()
        except Exception as exc:
            raise AudioError(
                AudioErrorKind.STREAM_CREATION_FAILED, f"Failed to start audio stream: {exc}"
            ) from exc

    def _create_context(self, config: AudioConfig) -> CaptureContext:
        if config.sample_rate <= 0 or config.channel_count <= 0 or self._block_size <= 0:
            raise AudioError(
                AudioErrorKind.CONTEXT_CREATION_FAILED,
                f"Invalid capture parameters: sample_rate={config.sample_rate}, "
                f"channels={config.channel_count}, block_size={self._block_size}",
            )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise AudioError(
                AudioErrorKind.CONTEXT_CREATION_FAILED, "Audio context requires a running event loop"
            ) from exc
        return CaptureContext(
            loop=loop,
            sample_rate=config.sample_rate,
            channel_count=config.channel_count,
            block_size=self._block_size,
            latency_hint=config.latency_hint,
        )

    def _setup_processor(self) -> None:
        if self._context is None or self._stream is None:
            raise AudioError(
                AudioErrorKind.PIPELINE_SETUP_FAILED, "Audio context or stream not initialized"
            )
        try:
            self._processor = BlockProcessor(self._block_size, self._process_block)
            self._stream.set_block_callback(self._processor.feed)
            self._stream.set_ended_callback(self._on_stream_ended)
        except Exception as exc:
            raise AudioError(
                AudioErrorKind.PIPELINE_SETUP_FAILED, f"Failed to wire audio pipeline: {exc}"
            ) from exc

    def _process_block(self, samples: np.ndarray) -> None:
        if self._status is not AudioStatus.ACTIVE:
            return
        try:
            metrics = compute_metrics(samples)
            self.events.emit(AudioEvent.METRICS_UPDATE, metrics)
            block = AudioBlock(
                samples=samples,
                metrics=metrics,
                timestamp=self._clock(),
                channel_count=self._config.channel_count,
                sample_rate=self._config.sample_rate,
            )
            self.events.emit(AudioEvent.AUDIO_DATA, block)
        except Exception as exc:
            logger.error(f"Audio processing failed: {exc}")
            self._schedule_recovery(
                AudioError(AudioErrorKind.UNKNOWN, f"Audio processing failed: {exc}")
            )

    def _on_stream_ended(self) -> None:
        if self._status is not AudioStatus.ACTIVE:
            return
        logger.warning("Audio stream ended unexpectedly")
        self._schedule_recovery(AudioError(AudioErrorKind.STREAM_ENDED, "Audio stream ended"))

    def _schedule_recovery(self, error: AudioError) -> None:
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        if self._processor is not None:
            # No more blocks until the stream is rebuilt
            self._processor.disconnect()
        self._recovery_task = asyncio.ensure_future(self._recover(error, self._token))

    async def _recover(self, error: AudioError, token: CancellationToken) -> None:
        if token.is_set():
            # cleanup() ran before this task got to start
            return
        try:
            await self._handle_failure(error, token)
            await self._run(self._config, token)
        except OperationCancelled:
            logger.info("Audio recovery cancelled")
        except AudioError as exc:
            logger.error(f"Audio recovery failed: {exc.message}")

    def _release(self) -> None:
        if self._processor is not None:
            self._processor.disconnect()
            self._processor = None

        if self._stream is not None:
            stream, self._stream = self._stream, None
            stream.set_block_callback(None)
            stream.set_ended_callback(None)
            _close_quietly(stream)

        if self._context is not None:
            if not self._context.closed:
                self._context.close()
            self._context = None

    def _set_status(self, status: AudioStatus) -> None:
        if status is self._status:
            return
        self._status = status
        self.events.emit(AudioEvent.STATUS_CHANGE, status)


def _as_audio_error(exc: BaseException) -> AudioError:
    if isinstance(exc, AudioError):
        return exc
    return AudioError(AudioErrorKind.UNKNOWN, f"Unknown audio error: {exc}")


def _close_quietly(stream: CaptureStream) -> None:
    try:
        stream.stop()
    except Exception as exc:
        logger.warning(f"Error stopping audio stream: {exc}")
    try:
        stream.close()
    except Exception as exc:
        logger.warning(f"Error closing audio stream: {exc}")

"""Microphone capture device backed by sounddevice."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

import numpy as np
import sounddevice as sd

from .types import AudioConfig, BlockCallback, EndedCallback

logger = logging.getLogger(__name__)

# PortAudio only knows "low"/"high" latency presets
_LATENCY_MAP = {
    "interactive": "low",
    "balanced": "high",
    "playback": "high",
}


class MicStream:
    """
    One open sounddevice.InputStream.

    The PortAudio callback thread only copies channel 0 out of the device
    buffer and hands it to the event loop; block processing itself always
    runs on the loop thread.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        config: AudioConfig,
        block_size: int,
        device: Optional[int] = None,
    ):
        self._loop = loop
        self._on_block: Optional[BlockCallback] = None
        self._on_ended: Optional[EndedCallback] = None
        self._stopping = False
        self._closed = False
        self._stream = sd.InputStream(
            callback=self._audio_callback,
            finished_callback=self._finished_callback,
            samplerate=config.sample_rate,
            channels=config.channel_count,
            blocksize=block_size,
            dtype="float32",
            device=device,
            latency=_LATENCY_MAP.get(config.latency_hint, "low"),
        )

    def set_block_callback(self, callback: Optional[BlockCallback]) -> None:
        self._on_block = callback

    def set_ended_callback(self, callback: Optional[EndedCallback]) -> None:
        self._on_ended = callback

    def start(self) -> None:
        self._stopping = False
        self._stream.start()

    def stop(self) -> None:
        self._stopping = True
        if not self._closed:
            self._stream.stop()

    def close(self) -> None:
        self._stopping = True
        if not self._closed:
            self._closed = True
            self._stream.close()

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.warning(f"Audio callback status: {status}")

        # indata is (frames, channels) and is reused by PortAudio after we return
        if indata.ndim > 1:
            pcm = np.array(indata[:, 0], dtype=np.float32, copy=True)
        else:
            pcm = np.array(indata, dtype=np.float32, copy=True)

        try:
            self._loop.call_soon_threadsafe(self._deliver, pcm)
        except RuntimeError:
            # Event loop already closed; nobody left to consume the block
            logger.debug("Dropping audio block, event loop closed")

    def _deliver(self, pcm: np.ndarray) -> None:
        callback = self._on_block
        if callback is not None:
            callback(pcm)

    def _finished_callback(self) -> None:
        if self._stopping:
            return
        try:
            self._loop.call_soon_threadsafe(self._notify_ended)
        except RuntimeError:
            logger.debug("Stream ended after event loop closed")

    def _notify_ended(self) -> None:
        callback = self._on_ended
        if callback is not None and not self._stopping:
            callback()


class Mic:
    """CaptureDevice implementation for the local microphone."""

    def __init__(self, device: Optional[int] = None):
        self._device = device

    async def open(self, config: AudioConfig, block_size: int) -> MicStream:
        loop = asyncio.get_running_loop()
        if config.echo_cancellation or config.noise_suppression or config.auto_gain_control:
            # PortAudio exposes raw input only; these constraints are advisory
            logger.debug(
                f"Processing hints (echo_cancellation={config.echo_cancellation}, "
                f"noise_suppression={config.noise_suppression}, "
                f"auto_gain_control={config.auto_gain_control}) are not applied by PortAudio"
            )
        stream = MicStream(loop, config, block_size, device=self._device)
        logger.info(
            f"Opened input stream: {config.sample_rate} Hz, "
            f"{config.channel_count} channel(s), {block_size} samples/block"
        )
        return stream


def list_input_devices() -> List[Dict[str, object]]:
    """Describe the available input devices."""
    devices = []
    for index, info in enumerate(sd.query_devices()):
        if info.get("max_input_channels", 0) > 0:
            devices.append({
                "index": index,
                "name": info.get("name"),
                "channels": info.get("max_input_channels"),
                "default_samplerate": info.get("default_samplerate"),
            })
    return devices

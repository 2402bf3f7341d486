import numpy as np
import pytest

from coach_client.config.settings import CoachClientConfig
from tests.fakes import FakeCaptureDevice, FakeWebSocket


@pytest.fixture
def fake_ws():
    return FakeWebSocket()


@pytest.fixture
def device():
    return FakeCaptureDevice()


@pytest.fixture
def coach_config():
    return CoachClientConfig(
        gemini_api_key="test_key_12345",
        sample_rate=8000,
        buffer_size=4000,
        chunk_seconds=1.0,
    )


@pytest.fixture
def sine_block():
    """A 441 Hz sine at 44.1 kHz; 4100 samples is exactly 41 periods."""
    def _make(amplitude: float, n: int = 4100, sample_rate: int = 44100, freq: float = 441.0):
        t = np.arange(n) / sample_rate
        return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)
    return _make

"""Signal metrics computed over one capture block."""

from __future__ import annotations

import math

import numpy as np

from .types import AudioMetrics

CLIPPING_THRESHOLD = 0.99
NOISE_FLOOR = 1e-4


def compute_metrics(samples: np.ndarray) -> AudioMetrics:
    """
    Compute AudioMetrics for a block of float samples in [-1, 1].

    average is the mean of the squared samples (the RMS radicand), not the
    mean absolute amplitude. Silent or empty blocks report snr = -inf.
    """
    data = np.asarray(samples, dtype=np.float64).ravel()
    if data.size == 0:
        return AudioMetrics(rms=0.0, peak=0.0, average=0.0, clipping=False, snr=float("-inf"))

    mean_square = float(np.mean(np.square(data)))
    peak = float(np.max(np.abs(data)))
    if not (math.isfinite(mean_square) and math.isfinite(peak)):
        raise ValueError("Audio block contains non-finite samples")

    rms = math.sqrt(mean_square)
    if mean_square > 0.0:
        snr = 10.0 * math.log10(mean_square / (NOISE_FLOOR ** 2))
    else:
        snr = float("-inf")

    return AudioMetrics(
        rms=rms,
        peak=peak,
        average=mean_square,
        clipping=peak > CLIPPING_THRESHOLD,
        snr=snr,
    )

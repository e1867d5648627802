"""
Frequency-domain rate estimation.

The window is resampled onto a uniform grid from its actual timestamps
(camera frame times jitter), linearly detrended, Hann-windowed and
zero-padded to a power of two before the FFT.  The dominant in-band bin
is refined with parabolic interpolation.

Confidence is the share of in-band power inside the main lobe around the
peak; peaks sitting on the band edge are penalised because they usually
come from drift or from energy outside the band.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
from scipy.signal import detrend

from ppg_vitals.config import SpectrumConfig

logger = logging.getLogger(__name__)


class FrequencyEstimator:
    """
    Dominant-frequency estimator for a band of interest.

    Parameters
    ----------
    low_hz, high_hz:
        Band searched for the dominant peak.
    min_window_s:
        Windows spanning less than this return ``(0.0, 0.0)``.
    min_fft_size:
        Minimum transform length; the padded length is the next power of
        two of ``max(n, min_fft_size)``.
    edge_penalty:
        Confidence multiplier for a peak on the first or last band bin.
    """

    def __init__(
        self,
        low_hz: float = 0.5,
        high_hz: float = 4.0,
        min_window_s: float = 5.0,
        min_fft_size: int = 1024,
        edge_penalty: float = 0.5,
    ) -> None:
        if not 0 < low_hz < high_hz:
            raise ValueError("require 0 < low_hz < high_hz")
        self.low_hz = low_hz
        self.high_hz = high_hz
        self.min_window_s = min_window_s
        self.min_fft_size = min_fft_size
        self.edge_penalty = edge_penalty

        self._last_freq: float = 0.0
        self._last_confidence: float = 0.0

    @classmethod
    def from_config(cls, config: SpectrumConfig) -> "FrequencyEstimator":
        return cls(
            low_hz=config.low_hz,
            high_hz=config.high_hz,
            min_window_s=config.min_window_s,
            min_fft_size=config.min_fft_size,
            edge_penalty=config.edge_penalty,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def estimate(self, timestamps: np.ndarray, values: np.ndarray) -> Tuple[float, float]:
        """
        Return ``(frequency_hz, confidence)`` of the dominant in-band peak.

        Returns (0.0, 0.0) when the window is too short or has no power.
        """
        ts = np.asarray(timestamps, dtype=np.float64)
        x = np.asarray(values, dtype=np.float64)
        if ts.size != x.size:
            raise ValueError("timestamps and values must have the same length")
        if ts.size < 8 or ts[-1] - ts[0] < self.min_window_s:
            return 0.0, 0.0

        uniform, fs = _resample_uniform(ts, x)
        if uniform is None:
            return 0.0, 0.0

        n = uniform.size
        signal = detrend(uniform, type="linear") * np.hanning(n)
        n_fft = 1 << int(np.ceil(np.log2(max(n, self.min_fft_size))))
        freqs = np.fft.rfftfreq(n_fft, d=1.0 / fs)
        power = np.abs(np.fft.rfft(signal, n=n_fft)) ** 2

        band_mask = (freqs >= self.low_hz) & (freqs <= self.high_hz)
        if band_mask.sum() < 3:
            return 0.0, 0.0
        band_power = power[band_mask]
        band_freqs = freqs[band_mask]
        total = float(band_power.sum())
        if total <= 1e-12:
            return 0.0, 0.0

        peak_idx = int(np.argmax(band_power))
        freq_step = band_freqs[1] - band_freqs[0]
        peak_freq = band_freqs[peak_idx]

        # Parabolic interpolation for sub-bin frequency resolution
        if 0 < peak_idx < band_power.size - 1:
            alpha = band_power[peak_idx - 1]
            beta = band_power[peak_idx]
            gamma = band_power[peak_idx + 1]
            denom = alpha - 2.0 * beta + gamma
            if abs(denom) > 1e-12:
                p = float(np.clip(0.5 * (alpha - gamma) / denom, -0.5, 0.5))
                peak_freq = band_freqs[peak_idx] + p * freq_step

        # Hann main lobe spans ±2 bins of the unpadded transform
        lobe = max(1, int(np.ceil(2.0 * n_fft / n)))
        lo, hi = max(0, peak_idx - lobe), min(band_power.size, peak_idx + lobe + 1)
        confidence = float(band_power[lo:hi].sum() / total)
        if peak_idx in (0, band_power.size - 1):
            confidence *= self.edge_penalty

        self._last_freq = float(peak_freq)
        self._last_confidence = min(1.0, confidence)
        return self._last_freq, self._last_confidence

    def estimate_per_minute(self, timestamps: np.ndarray, values: np.ndarray) -> Tuple[float, float]:
        """Same as :meth:`estimate` but in cycles per minute (BPM, breaths/min)."""
        freq, confidence = self.estimate(timestamps, values)
        return freq * 60.0, confidence

    def reset(self) -> None:
        self._last_freq = 0.0
        self._last_confidence = 0.0

    @property
    def last_frequency(self) -> float:
        return self._last_freq

    @property
    def last_confidence(self) -> float:
        return self._last_confidence


def _resample_uniform(ts: np.ndarray, x: np.ndarray) -> Tuple[Optional[np.ndarray], float]:
    """Linearly resample onto a uniform grid at the window's mean rate."""
    span = float(ts[-1] - ts[0])
    if span <= 0:
        return None, 0.0
    fs = (ts.size - 1) / span
    grid = ts[0] + np.arange(ts.size) / fs
    grid[-1] = min(grid[-1], ts[-1])
    return np.interp(grid, ts, x), fs

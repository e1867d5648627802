"""
Motion / artifact compensation.

A finger shifting on the lens produces large, fast excursions that swamp
the pulsatile component.  Each filtered sample is checked against three
criteria computed over short trailing windows:

- derivative energy (mean-square first difference over ~0.5 s) compared
  with a clean-signal baseline,
- instantaneous amplitude compared with a clean envelope,
- local SNR: window variance against a wavelet noise estimate (median
  absolute deviation of the finest db4 detail coefficients).

Baselines only adapt on unflagged samples.  A flag is held for a short
time after the criteria clear so ringing from the band-pass filter does
not leak through.

In ``suppress`` mode flagged samples are replaced by 0; in ``subtract``
mode the excursion beyond the clean envelope is removed.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Optional, Tuple

import numpy as np
import pywt

from ppg_vitals.config import ArtifactConfig

logger = logging.getLogger(__name__)

_EPS = 1e-9
_MAD_SCALE = 0.6745


class MotionCompensator:
    """
    Flag and compensate motion artifacts sample by sample.

    Parameters
    ----------
    sample_rate:
        Nominal sample rate (Hz) used to size the trailing windows.
    config:
        Thresholds, window lengths and compensation mode.
    """

    def __init__(self, sample_rate: float = 30.0, config: Optional[ArtifactConfig] = None) -> None:
        self.sample_rate = sample_rate
        self.config = config or ArtifactConfig()

        self._deriv: Deque[float] = deque(maxlen=max(2, int(self.config.derivative_window_s * sample_rate)))
        self._window: Deque[float] = deque(maxlen=max(8, int(self.config.snr_window_s * sample_rate)))
        self._warmup = max(1, int(self.config.warmup_s * sample_rate))
        self.reset()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process(self, value: float, timestamp: float) -> Tuple[float, bool]:
        """
        Return ``(clean_value, flagged)`` for one filtered sample.
        """
        if self._prev is not None:
            self._deriv.append((value - self._prev) ** 2)
        self._prev = value
        self._window.append(value)
        self._count += 1

        deriv_ms = float(np.mean(self._deriv)) if self._deriv else 0.0
        magnitude = abs(value)

        if self._count <= self._warmup:
            # Cumulative averages while the baselines settle
            rate = 1.0 / self._count
            self._deriv_baseline += rate * (deriv_ms - self._deriv_baseline)
            self._envelope += rate * (magnitude - self._envelope)
            return value, False

        triggered = self._triggered(value, deriv_ms)
        if triggered:
            if not self._flagged:
                logger.debug("Motion artifact detected at t=%.2f s", timestamp)
            if self._flag_start is None:
                self._flag_start = timestamp
            self._hold_until = timestamp + self.config.hold_s
        elif self._flag_start is not None and timestamp > self._hold_until:
            logger.debug(
                "Motion artifact cleared after %.2f s", timestamp - self._flag_start
            )
            self._flag_start = None

        self._flagged = self._flag_start is not None
        if not self._flagged:
            alpha = self.config.baseline_alpha
            self._deriv_baseline += alpha * (deriv_ms - self._deriv_baseline)
            self._envelope += alpha * (magnitude - self._envelope)
            return value, False

        if self.config.mode == "subtract":
            limit = self.config.amplitude_ratio * self._envelope
            return float(np.clip(value, -limit, limit)), True
        return 0.0, True

    def artifact_duration(self, timestamp: float) -> float:
        """Seconds the current artifact has lasted (0 when not flagged)."""
        if self._flag_start is None:
            return 0.0
        return timestamp - self._flag_start

    def local_snr_db(self) -> float:
        """SNR (dB) of the trailing window against the wavelet noise estimate."""
        if len(self._window) < 8:
            return float("inf")
        window = np.fromiter(self._window, dtype=np.float64, count=len(self._window))
        _, detail = pywt.dwt(window - window.mean(), self.config.wavelet)
        sigma = float(np.median(np.abs(detail))) / _MAD_SCALE
        variance = float(window.var())
        if sigma < _EPS:
            return float("inf")
        return 10.0 * np.log10(max(variance, _EPS) / (sigma * sigma))

    def reset(self) -> None:
        self._deriv.clear()
        self._window.clear()
        self._prev: Optional[float] = None
        self._count = 0
        self._deriv_baseline = 0.0
        self._envelope = 0.0
        self._flag_start: Optional[float] = None
        self._hold_until = float("-inf")
        self._flagged = False

    @property
    def flagged(self) -> bool:
        return self._flagged

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _triggered(self, value: float, deriv_ms: float) -> bool:
        cfg = self.config
        if deriv_ms > cfg.derivative_ratio * max(self._deriv_baseline, _EPS):
            return True
        if abs(value) > cfg.amplitude_ratio * max(self._envelope, _EPS):
            return True
        return self.local_snr_db() < cfg.min_snr_db


def wavelet_denoise(signal: np.ndarray, wavelet: str = "db4", max_level: int = 4) -> np.ndarray:
    """
    Soft-threshold wavelet denoising with the universal threshold.

    The noise level is estimated from the finest detail coefficients
    (``sigma = MAD / 0.6745``); every detail level is shrunk by
    ``sigma·sqrt(2·ln n)``.
    """
    x = np.asarray(signal, dtype=np.float64)
    if x.size < 8:
        return x.copy()
    level = min(max_level, pywt.dwt_max_level(x.size, pywt.Wavelet(wavelet).dec_len))
    if level < 1:
        return x.copy()
    coeffs = pywt.wavedec(x, wavelet, level=level)
    sigma = float(np.median(np.abs(coeffs[-1]))) / _MAD_SCALE
    threshold = sigma * np.sqrt(2.0 * np.log(x.size))
    denoised = [coeffs[0]] + [pywt.threshold(c, threshold, mode="soft") for c in coeffs[1:]]
    return pywt.waverec(denoised, wavelet)[: x.size]

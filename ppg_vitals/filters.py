"""
Causal, per-sample PPG conditioning.

Each raw sample passes through four stages:

1. Outlier clamp – values further than ``outlier_sigma`` standard
   deviations from the mean of the trailing raw window are replaced by
   that mean.
2. Butterworth band-pass (default 0.5 – 4.0 Hz = 30 – 240 BPM) in SOS
   form with persistent state, primed to the first sample's steady state
   so the DC level does not ring through.
3. Scalar Kalman smoother (random-walk model).
4. Optional EMA baseline subtraction.

The result is scaled by the sensitivity amplification factor.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Optional

import numpy as np
from scipy.signal import butter, sosfilt, sosfilt_zi

from ppg_vitals.config import FilterConfig, SensitivitySettings

logger = logging.getLogger(__name__)


class AdaptiveThreshold:
    """
    A bounded value that moves toward observed targets.

    Parameters
    ----------
    initial:
        Starting value.
    low, high:
        Bounds the value is clamped to after every update.
    rate:
        Fraction of the distance to the target covered per update, scaled
        by the update's confidence.
    """

    def __init__(self, initial: float, low: float, high: float, rate: float = 0.1) -> None:
        self.initial = initial
        self.low = low
        self.high = high
        self.rate = rate
        self.value = initial

    def update(self, target: float, confidence: float = 1.0) -> float:
        step = self.rate * min(1.0, max(0.0, confidence))
        self.value += step * (target - self.value)
        self.value = min(self.high, max(self.low, self.value))
        return self.value

    def rebound(self, low: float, high: float) -> None:
        """Move the bounds (e.g. to follow signal statistics) and re-clamp."""
        self.low, self.high = low, max(low, high)
        self.value = min(self.high, max(self.low, self.value))

    def reset(self, value: Optional[float] = None) -> None:
        self.value = self.initial if value is None else value


class KalmanSmoother:
    """One-dimensional Kalman filter with a random-walk state model."""

    def __init__(self, q: float = 0.15, r: float = 0.8) -> None:
        self.q = q
        self.r = r
        self.reset()

    def update(self, z: float) -> float:
        if self._x is None:
            self._x = z
            return z
        p = self._p + self.q
        k = p / (p + self.r)
        self._x += k * (z - self._x)
        self._p = (1.0 - k) * p
        return self._x

    def reset(self) -> None:
        self._x: Optional[float] = None
        self._p = 1.0


class SignalFilter:
    """
    Stateful per-sample filter chain.

    Parameters
    ----------
    sample_rate:
        Nominal sample rate (Hz) the band-pass is designed for.
    config:
        Band edges, filter order, outlier and Kalman constants.
    sensitivity:
        ``noise_reduction`` scales the Kalman measurement noise;
        ``signal_amplification`` scales the output.
    """

    def __init__(
        self,
        sample_rate: float = 30.0,
        config: Optional[FilterConfig] = None,
        sensitivity: Optional[SensitivitySettings] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.config = config or FilterConfig()
        self.sensitivity = sensitivity or SensitivitySettings()

        self._sos = self._build_filter()
        self._zi: Optional[np.ndarray] = None
        self._raw: Deque[float] = deque(
            maxlen=max(self.config.outlier_min_samples, int(self.config.outlier_window_s * sample_rate))
        )
        self._kalman = KalmanSmoother(
            self.config.kalman_q, self.config.kalman_r * self.sensitivity.noise_reduction
        )
        self._baseline: Optional[float] = None
        self._clamped = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def filter(self, value: float) -> float:
        """Filter one raw sample and return the conditioned value."""
        x = self._clamp_outlier(float(value))

        if self._zi is None:
            self._zi = sosfilt_zi(self._sos) * x
        y, self._zi = sosfilt(self._sos, np.array([x]), zi=self._zi)
        out = self._kalman.update(float(y[0]))

        alpha = self.config.baseline_alpha
        if alpha is not None:
            if self._baseline is None:
                self._baseline = out
            else:
                self._baseline += alpha * (out - self._baseline)
            out -= self._baseline

        out *= self.sensitivity.signal_amplification
        if not np.isfinite(out):
            logger.warning("Non-finite filter output; resetting filter state")
            self.reset()
            return 0.0
        return out

    def update_sensitivity(self, sensitivity: SensitivitySettings) -> None:
        """Apply new sensitivity multipliers without losing filter state."""
        self.sensitivity = sensitivity
        self._kalman.r = self.config.kalman_r * sensitivity.noise_reduction

    def reset(self) -> None:
        """Zero all filter state."""
        self._zi = None
        self._raw.clear()
        self._kalman.reset()
        self._baseline = None
        self._clamped = 0

    @property
    def clamped_count(self) -> int:
        """Number of outliers clamped since the last reset."""
        return self._clamped

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _clamp_outlier(self, x: float) -> float:
        out = x
        if len(self._raw) >= self.config.outlier_min_samples:
            window = np.fromiter(self._raw, dtype=np.float64, count=len(self._raw))
            mean = float(window.mean())
            std = float(window.std())
            if std > 1e-9 and abs(x - mean) > self.config.outlier_sigma * std:
                out = mean
                self._clamped += 1
        self._raw.append(x)
        return out

    def _build_filter(self) -> np.ndarray:
        """Construct a Butterworth bandpass filter (SOS form)."""
        nyq = self.sample_rate / 2.0
        low = self.config.low_hz / nyq
        high = self.config.high_hz / nyq
        # Clamp to valid range
        low = max(1e-4, min(low, 0.999))
        high = max(low + 1e-4, min(high, 0.999))
        return butter(self.config.order, [low, high], btype="bandpass", output="sos")

"""
Respiratory rate from the low-frequency modulation of the raw red trace.

Breathing modulates venous return and therefore the baseline of the PPG
signal at 0.1 – 0.5 Hz (6 – 30 breaths/min).  The dominant frequency of
the raw red window within that band gives the rate.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

from ppg_vitals.config import RespirationConfig
from ppg_vitals.spectrum import FrequencyEstimator

logger = logging.getLogger(__name__)


class RespirationEstimator:
    """
    Breaths-per-minute estimator recomputed every ``update_every`` samples.

    Parameters
    ----------
    config:
        Band, window lengths and plausible rate range.
    """

    def __init__(self, config: Optional[RespirationConfig] = None) -> None:
        self.config = config or RespirationConfig()
        self._spectrum = FrequencyEstimator(
            low_hz=self.config.low_hz,
            high_hz=self.config.high_hz,
            min_window_s=self.config.min_window_s,
        )
        self.reset()

    def update(self, timestamps: np.ndarray, red: np.ndarray) -> Tuple[float, float]:
        """
        Return ``(breaths_per_minute, confidence)``; 0.0 until enough data
        has been collected or when the estimate is implausible.
        """
        self._pending += 1
        if self._pending < self.config.update_every:
            return self._rate, self._confidence
        self._pending = 0

        ts = np.asarray(timestamps, dtype=np.float64)
        if ts.size:
            start = int(np.searchsorted(ts, ts[-1] - self.config.window_s, side="left"))
            ts, red = ts[start:], np.asarray(red)[start:]
        rate, confidence = self._spectrum.estimate_per_minute(ts, red)
        if not self.config.min_rate <= rate <= self.config.max_rate:
            if rate > 0:
                logger.debug("Respiration rate %.1f/min outside plausible range", rate)
            self._rate, self._confidence = 0.0, 0.0
        else:
            self._rate, self._confidence = rate, confidence
        return self._rate, self._confidence

    def reset(self) -> None:
        self._rate = 0.0
        self._confidence = 0.0
        self._pending = 0
        self._spectrum.reset()

    @property
    def rate(self) -> float:
        return self._rate

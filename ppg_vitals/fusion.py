"""
Heart-rate fusion and validation.

Time-domain (beat interval) and frequency-domain (spectral peak)
estimates are combined by a confidence-weighted average, validated
against physiological bounds and a jump limiter, and smoothed over a
short confidence-weighted history.  Invalid updates fall back to the
last validated value so a single bad window never reaches the output.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, List, Optional, Tuple

import numpy as np

from ppg_vitals.config import FusionConfig, SensitivitySettings

logger = logging.getLogger(__name__)


class HeartRateFusion:
    """
    Fuse, validate and smooth BPM estimates.

    Parameters
    ----------
    config:
        Bounds, jump limiter and history sizes.
    sensitivity:
        ``response_time`` scales the smoothing window.
    """

    def __init__(
        self,
        config: Optional[FusionConfig] = None,
        sensitivity: Optional[SensitivitySettings] = None,
    ) -> None:
        self.config = config or FusionConfig()
        self.sensitivity = sensitivity or SensitivitySettings()
        self._history: Deque[Tuple[float, float]] = deque(maxlen=self.config.history)
        self.reset()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def update(
        self,
        time_bpm: float,
        time_confidence: float,
        freq_bpm: float,
        freq_confidence: float,
        motion: bool = False,
    ) -> Tuple[float, float]:
        """
        Fold one pair of estimates into the output.

        Either estimate may be 0 to mark it unavailable.  During motion
        the previous output is held with zero confidence.

        Returns
        -------
        bpm, confidence:
            Smoothed heart rate (0.0 before the first valid value) and the
            confidence of this update (0 – 1).
        """
        if motion:
            return self._output, 0.0

        fused = self._fuse(time_bpm, time_confidence, freq_bpm, freq_confidence)
        if fused is None:
            return self._output, 0.0
        bpm, confidence = fused

        cfg = self.config
        if not cfg.min_bpm <= bpm <= cfg.max_bpm:
            logger.debug("Fused BPM %.1f outside [%.0f, %.0f]", bpm, cfg.min_bpm, cfg.max_bpm)
            return self._fallback(confidence)

        if (
            self._last_valid > 0
            and abs(bpm - self._last_valid) > cfg.max_jump_bpm
            and confidence < cfg.jump_confidence
        ):
            self._rejections += 1
            if self._rejections <= cfg.max_jump_rejections:
                logger.debug("BPM jump %.1f -> %.1f rejected", self._last_valid, bpm)
                return self._fallback(confidence)
            logger.info("Accepting sustained BPM change %.1f -> %.1f", self._last_valid, bpm)

        self._rejections = 0
        self._last_valid = bpm
        self._history.append((bpm, confidence))
        self._output = self._smoothed()
        return self._output, confidence

    def update_sensitivity(self, sensitivity: SensitivitySettings) -> None:
        self.sensitivity = sensitivity

    def reset(self) -> None:
        self._history.clear()
        self._last_valid: float = 0.0
        self._output: float = 0.0
        self._rejections = 0

    @property
    def history(self) -> List[Tuple[float, float]]:
        """Validated ``(bpm, confidence)`` pairs, oldest first."""
        return list(self._history)

    @property
    def last_valid(self) -> float:
        return self._last_valid

    @property
    def output(self) -> float:
        return self._output

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _fuse(
        time_bpm: float, time_conf: float, freq_bpm: float, freq_conf: float
    ) -> Optional[Tuple[float, float]]:
        sources = [(b, c) for b, c in ((time_bpm, time_conf), (freq_bpm, freq_conf)) if b > 0]
        if not sources:
            return None
        if len(sources) == 1:
            return sources[0]
        (b1, c1), (b2, c2) = sources
        total = c1 + c2
        w1, w2 = (0.5, 0.5) if total <= 0 else (c1 / total, c2 / total)
        return w1 * b1 + w2 * b2, w1 * c1 + w2 * c2

    def _fallback(self, confidence: float) -> Tuple[float, float]:
        if self._last_valid <= 0:
            return 0.0, 0.0
        return self._output, 0.5 * confidence

    def _smoothed(self) -> float:
        size = max(1, int(round(self.config.smoothing_window * self.sensitivity.response_time)))
        recent = np.array(list(self._history)[-size:], dtype=np.float64)
        weights = recent[:, 1]
        if weights.sum() <= 0:
            return float(recent[:, 0].mean())
        return float(np.average(recent[:, 0], weights=weights))

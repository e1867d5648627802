"""
Beat detection on the cleaned PPG waveform.

A small state machine walks the waveform one sample at a time:

    IDLE ─rise→ CANDIDATE_RISING ─fall→ CANDIDATE_PEAK ─falls confirmed→ VALIDATED
                                                                       └→ REJECTED

Once a peak is followed by ``fall_samples`` falling samples it is checked,
cheapest test first:

1. not inside a motion-suppressed stretch,
2. maximum of its local neighbourhood,
3. outside the refractory period after the last beat,
4. above the adaptive threshold (EMA of ``mean + k·std`` of the trailing
   window, bounded to ``[mean, mean + 3·std]``),
5. pulse shape: mostly rising before, falling after,
6. interval consistent with recent intervals (a 2× or 3× interval is
   accepted as a re-anchor after missed beats).

Rejected candidates are simply dropped.
"""

from __future__ import annotations

import logging
from collections import deque
from enum import Enum, auto
from typing import Deque, List, Optional, Tuple

import numpy as np

from ppg_vitals.config import PeakDetectorConfig, ProcessingSettings, SensitivitySettings
from ppg_vitals.filters import AdaptiveThreshold
from ppg_vitals.types import BeatEvent

logger = logging.getLogger(__name__)


class PeakState(Enum):
    IDLE             = auto()
    CANDIDATE_RISING = auto()
    CANDIDATE_PEAK   = auto()
    VALIDATED        = auto()
    REJECTED         = auto()


class PeakDetector:
    """
    Adaptive-threshold beat detector.

    Parameters
    ----------
    sample_rate:
        Nominal sample rate (Hz); sizes the trailing statistics window.
    settings:
        ``min_peak_distance_ms``, ``max_peak_distance_ms`` and
        ``peak_threshold_factor``.
    config:
        Window, shape and interval-consistency constants.
    sensitivity:
        ``peak_detection`` multiplies the threshold factor.
    """

    def __init__(
        self,
        sample_rate: float = 30.0,
        settings: Optional[ProcessingSettings] = None,
        config: Optional[PeakDetectorConfig] = None,
        sensitivity: Optional[SensitivitySettings] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.settings = settings or ProcessingSettings()
        self.config = config or PeakDetectorConfig()
        self.sensitivity = sensitivity or SensitivitySettings()

        maxlen = max(self.config.local_max_samples, int(self.config.window_s * sample_rate))
        self._times: Deque[float] = deque(maxlen=maxlen)
        self._values: Deque[float] = deque(maxlen=maxlen)
        self._suppressed: Deque[bool] = deque(maxlen=maxlen)
        self._intervals: Deque[float] = deque(maxlen=max(self.config.bpm_intervals, self.config.interval_history))
        self._threshold = AdaptiveThreshold(0.0, 0.0, 0.0, rate=self.config.threshold_rate)
        self.reset()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process(self, value: float, timestamp: float, suppressed: bool = False) -> Optional[BeatEvent]:
        """
        Feed one cleaned sample; return a :class:`BeatEvent` when a beat
        is validated, else ``None``.  Suppressed samples never produce a
        beat.
        """
        if (
            self._last_beat is not None
            and timestamp - self._last_beat > self.settings.max_peak_distance_ms / 1000.0
        ):
            logger.debug("No beat for %.2f s; resetting beat history", timestamp - self._last_beat)
            self._reset_history()

        prev = self._values[-1] if self._values else None
        evicting = len(self._values) == self._values.maxlen
        self._times.append(timestamp)
        self._values.append(value)
        self._suppressed.append(suppressed)

        if suppressed:
            self._state = PeakState.IDLE
            return None
        if prev is None:
            return None

        rising = value > prev
        falling = value < prev

        if self._state in (PeakState.IDLE, PeakState.VALIDATED, PeakState.REJECTED):
            self._state = PeakState.CANDIDATE_RISING if rising else PeakState.IDLE
        elif self._state is PeakState.CANDIDATE_RISING:
            if falling:
                self._state = PeakState.CANDIDATE_PEAK
                self._falls = 1
                self._candidate = len(self._values) - 2
        elif self._state is PeakState.CANDIDATE_PEAK:
            if rising:
                self._state = PeakState.CANDIDATE_RISING
            elif falling:
                self._falls += 1
            # Deque indices shift left when the oldest sample is evicted
            if evicting:
                self._candidate -= 1

        if self._state is PeakState.CANDIDATE_PEAK and self._falls >= self.config.fall_samples:
            return self._evaluate(self._candidate)
        return None

    def estimate_bpm(self) -> Tuple[float, float]:
        """
        Return ``(bpm, confidence)`` from the recent validated intervals.

        Confidence grows with the number of intervals and falls with their
        coefficient of variation.  Returns (0.0, 0.0) without intervals.
        """
        if not self._intervals:
            return 0.0, 0.0
        recent = np.array(list(self._intervals)[-self.config.bpm_intervals:], dtype=np.float64)
        mean = float(recent.mean())
        if mean <= 0:
            return 0.0, 0.0
        cv = float(recent.std()) / mean
        confidence = min(1.0, recent.size / 4.0) * max(0.0, 1.0 - 2.0 * cv)
        return 60.0 / mean, confidence

    def update_settings(self, settings: ProcessingSettings) -> None:
        self.settings = settings

    def update_sensitivity(self, sensitivity: SensitivitySettings) -> None:
        self.sensitivity = sensitivity

    def reset(self) -> None:
        """Clear the waveform window, threshold and beat history."""
        self._times.clear()
        self._values.clear()
        self._suppressed.clear()
        self._state = PeakState.IDLE
        self._falls = 0
        self._candidate = -1
        self._reset_history()

    @property
    def state(self) -> PeakState:
        return self._state

    @property
    def intervals(self) -> List[float]:
        """Recent validated inter-beat intervals (s), oldest first."""
        return list(self._intervals)

    @property
    def threshold(self) -> float:
        return self._threshold.value

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _reset_history(self) -> None:
        self._intervals.clear()
        self._last_beat: Optional[float] = None
        self._threshold_primed = False
        self._threshold.reset(0.0)

    def _evaluate(self, c: int) -> Optional[BeatEvent]:
        cfg = self.config
        values = np.fromiter(self._values, dtype=np.float64, count=len(self._values))
        n = values.size
        if c < cfg.rise_samples or c >= n:
            return self._reject("insufficient history")
        t_c = self._times[c]
        v_c = values[c]

        # 1. motion-suppressed neighbourhood
        if any(self._suppressed[i] for i in range(c - cfg.rise_samples, n)):
            return self._reject("suppressed neighbourhood")

        # 2. local maximum
        half = cfg.local_max_samples // 2
        if v_c < values[max(0, c - half):min(n, c + half + 1)].max():
            return self._reject("not a local maximum")

        # 3. refractory period
        min_interval = self.settings.min_peak_distance_ms / 1000.0
        if self._last_beat is not None and t_c - self._last_beat < min_interval:
            return self._reject("refractory")

        # 4. adaptive threshold over unsuppressed samples
        clean = values[~np.fromiter(self._suppressed, dtype=bool, count=n)]
        mean = float(clean.mean())
        std = float(clean.std())
        if std < 1e-9:
            return self._reject("flat signal")
        k = self.settings.peak_threshold_factor * self.sensitivity.peak_detection
        target = mean + k * std
        self._threshold.rebound(mean, mean + cfg.threshold_max_sigma * std)
        if not self._threshold_primed:
            self._threshold.reset(target)
            self._threshold_primed = True
        threshold = self._threshold.update(target)
        if v_c <= threshold:
            return self._reject("below threshold")

        # 5. pulse shape
        before = np.diff(values[c - cfg.rise_samples:c + 1])
        after = np.diff(values[c:c + cfg.fall_samples + 1])
        if int((before > 0).sum()) < cfg.min_rises or not (after < 0).all():
            return self._reject("shape")

        # 6. interval consistency
        interval: Optional[float] = None
        if self._last_beat is not None:
            interval = t_c - self._last_beat
            recent = list(self._intervals)[-cfg.interval_history:]
            if recent:
                mean_interval = float(np.mean(recent))
                if abs(interval - mean_interval) > cfg.interval_tolerance * mean_interval:
                    if not self._is_missed_beat(interval, mean_interval):
                        return self._reject(f"interval {interval:.3f} s vs mean {mean_interval:.3f} s")
                    logger.debug("Re-anchoring after %.0f missed beat(s)", interval / mean_interval - 1)
                    interval = None
            if interval is not None and interval > self.settings.max_peak_distance_ms / 1000.0:
                interval = None

        if interval is not None:
            self._intervals.append(interval)
        self._last_beat = t_c
        self._state = PeakState.VALIDATED

        quality = float(min(1.0, (v_c - mean) / (np.sqrt(2.0) * std)))
        beat = BeatEvent(timestamp=t_c, amplitude=float(v_c - mean), quality=quality, interval=interval)
        logger.debug("Beat at t=%.3f s (interval=%s, quality=%.2f)", t_c, interval, quality)
        return beat

    def _is_missed_beat(self, interval: float, mean_interval: float) -> bool:
        tol = self.config.interval_tolerance
        for multiple in range(2, self.config.max_missed_beats + 1):
            expected = multiple * mean_interval
            if abs(interval - expected) <= tol * mean_interval:
                return True
        return False

    def _reject(self, reason: str) -> None:
        self._state = PeakState.REJECTED
        logger.debug("Candidate rejected: %s", reason)
        return None

"""
Cuffless blood-pressure estimation from pulse morphology.

Between consecutive beats the wavelet-denoised waveform is searched for:

- the foot (end-diastolic minimum before the next upstroke) and the rise
  time from foot to the next systolic peak,
- the pulse width at half amplitude,
- the dicrotic notch (first local minimum within 30 – 70 % of the beat)
  and the diastolic peak that follows it,
- the augmentation index ``(diastolic peak − foot) / (systolic peak − foot)``,
- the stiffness index ``body height / Δt(systolic → diastolic peak)``.

A linear model maps the median features and heart rate to systolic and
diastolic pressure.  Intercepts come from the calibration profile's
reference reading when present, else 120/80 adjusted for age and BMI.
Results are bounded (systolic 90 – 180, diastolic 60 – 120) with a minimum
pulse pressure, then median-smoothed.

This is a rough trend indicator, not a measurement.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional, Sequence, Tuple

import numpy as np

from ppg_vitals.artifacts import wavelet_denoise
from ppg_vitals.config import BloodPressureConfig, CalibrationProfile
from ppg_vitals.types import BeatEvent, CalibrationState

logger = logging.getLogger(__name__)

_EPS = 1e-9


@dataclass(frozen=True)
class PulseFeatures:
    rise_time: float             # s, foot → systolic peak
    pulse_width: float           # s, above half amplitude
    augmentation_index: float    # 0 – 1, 0 when no notch was found
    stiffness_index: float       # m/s, 0 when no notch was found
    beat_interval: float         # s


class BloodPressureEstimator:
    """
    Estimate ``(systolic, diastolic)`` in mmHg.

    Parameters
    ----------
    config:
        Model coefficients, bounds and smoothing length.
    calibration:
        Initial calibration state; defaults to an uncalibrated profile.
    """

    def __init__(
        self,
        config: Optional[BloodPressureConfig] = None,
        calibration: Optional[CalibrationState] = None,
    ) -> None:
        self.config = config or BloodPressureConfig()
        self._calibration = calibration or CalibrationState()
        self._history: Deque[Tuple[float, float]] = deque(maxlen=self.config.smoothing)
        self.reset()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def estimate(
        self,
        timestamps: np.ndarray,
        waveform: np.ndarray,
        beats: Sequence[BeatEvent],
        bpm: float = 0.0,
    ) -> Tuple[float, float]:
        """
        Update and return the smoothed ``(systolic, diastolic)`` pair.

        Fewer than two beats inside the waveform window leave the last
        valid pair unchanged (``(0.0, 0.0)`` before the first estimate).
        """
        ts = np.asarray(timestamps, dtype=np.float64)
        wave = np.asarray(waveform, dtype=np.float64)
        if ts.size < 8:
            return self._last
        inside = [b.timestamp for b in beats if ts[0] <= b.timestamp <= ts[-1]]
        if len(inside) < 2:
            return self._last

        features = self._extract_features(ts, wavelet_denoise(wave), np.array(inside))
        if not features:
            return self._last

        summary = _median_features(features)
        hr = bpm if bpm > 0 else 60.0 / max(summary.beat_interval, _EPS)
        systolic, diastolic = self._model(summary, hr)
        self._last_raw = (systolic, diastolic)
        systolic += self._calibration.systolic_offset
        diastolic += self._calibration.diastolic_offset

        self._history.append(self._bounded(systolic, diastolic))
        history = np.array(self._history)
        self._last = (float(np.median(history[:, 0])), float(np.median(history[:, 1])))
        self._last_features = summary
        return self._last

    def set_profile(self, profile: CalibrationProfile) -> CalibrationState:
        """Replace the calibration profile; fitted offsets are discarded."""
        self._calibration = CalibrationState(profile=profile)
        self.reset()
        logger.info("Blood-pressure profile updated: %s", profile)
        return self._calibration

    def calibrate(self, systolic: float, diastolic: float) -> CalibrationState:
        """
        Fit intercept offsets so the current model output matches a
        reference cuff reading.
        """
        bounded = CalibrationProfile(reference_systolic=systolic, reference_diastolic=diastolic)
        raw = self._last_raw if self._last_raw is not None else self._intercepts()
        self._calibration = CalibrationState(
            profile=self._calibration.profile,
            systolic_offset=bounded.reference_systolic - raw[0],
            diastolic_offset=bounded.reference_diastolic - raw[1],
            calibrated=True,
        )
        self._history.clear()
        self._last = self._bounded(systolic, diastolic)
        logger.info(
            "Blood pressure calibrated (offsets %+.1f / %+.1f mmHg)",
            self._calibration.systolic_offset,
            self._calibration.diastolic_offset,
        )
        return self._calibration

    def reset(self) -> None:
        """Drop smoothing history; calibration is kept."""
        self._history.clear()
        self._last: Tuple[float, float] = (0.0, 0.0)
        self._last_raw: Optional[Tuple[float, float]] = None
        self._last_features: Optional[PulseFeatures] = None

    @property
    def calibration(self) -> CalibrationState:
        return self._calibration

    @property
    def last_features(self) -> Optional[PulseFeatures]:
        return self._last_features

    @property
    def last(self) -> Tuple[float, float]:
        return self._last

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _extract_features(
        self, ts: np.ndarray, wave: np.ndarray, beat_times: np.ndarray
    ) -> List[PulseFeatures]:
        cfg = self.config
        profile = self._calibration.profile
        height_m = (profile.height_cm or cfg.default_height_cm) / 100.0
        indices = np.clip(np.searchsorted(ts, beat_times), 0, ts.size - 1)

        features = []
        for i0, i1 in zip(indices[:-1], indices[1:]):
            if i1 - i0 < 4:
                continue
            seg = wave[i0:i1 + 1]
            tseg = ts[i0:i1 + 1]
            foot = int(np.argmin(seg))
            rise = float(tseg[-1] - tseg[foot])
            amplitude = float(seg[-1] - seg[foot])
            height = float(seg[0] - seg[foot])
            if rise <= 0 or amplitude <= _EPS or height <= _EPS:
                continue

            half = seg[foot] + 0.5 * amplitude
            dt = float(tseg[-1] - tseg[0]) / (seg.size - 1)
            width = float(np.count_nonzero(seg > half)) * dt

            augmentation = 0.0
            stiffness = 0.0
            notch = self._find_notch(seg, foot)
            if notch is not None:
                dia_rel = notch + int(np.argmax(seg[notch:foot + 1]))
                augmentation = float(np.clip((seg[dia_rel] - seg[foot]) / height, 0.0, 1.0))
                delay = float(tseg[dia_rel] - tseg[0])
                if delay > _EPS:
                    stiffness = height_m / delay

            features.append(PulseFeatures(
                rise_time=rise,
                pulse_width=width,
                augmentation_index=augmentation,
                stiffness_index=stiffness,
                beat_interval=float(tseg[-1] - tseg[0]),
            ))
        return features

    def _find_notch(self, seg: np.ndarray, foot: int) -> Optional[int]:
        lo_frac, hi_frac = self.config.notch_search
        lo = max(1, int(lo_frac * seg.size))
        hi = min(foot, int(hi_frac * seg.size))
        for k in range(lo, hi):
            if seg[k] < seg[k - 1] and seg[k] <= seg[k + 1]:
                return k
        return None

    def _intercepts(self) -> Tuple[float, float]:
        cfg = self.config
        profile = self._calibration.profile
        if profile.reference_systolic is not None and profile.reference_diastolic is not None:
            return profile.reference_systolic, profile.reference_diastolic

        systolic, diastolic = cfg.default_systolic, cfg.default_diastolic
        if profile.age is not None:
            systolic += cfg.age_systolic_gain * (profile.age - cfg.age_reference)
            diastolic += cfg.age_diastolic_gain * (profile.age - cfg.age_reference)
        bmi = profile.bmi
        if bmi is not None:
            systolic += cfg.bmi_systolic_gain * (bmi - cfg.bmi_reference)
            diastolic += cfg.bmi_diastolic_gain * (bmi - cfg.bmi_reference)
        return systolic, diastolic

    def _model(self, f: PulseFeatures, hr: float) -> Tuple[float, float]:
        cfg = self.config
        systolic, diastolic = self._intercepts()
        d_hr = hr - cfg.reference_hr
        d_stiff = f.stiffness_index - cfg.stiffness_reference if f.stiffness_index > 0 else 0.0

        systolic += (
            cfg.hr_systolic_gain * d_hr
            + cfg.rise_systolic_gain * (f.rise_time - cfg.rise_time_reference_s)
            + cfg.augmentation_gain * f.augmentation_index
            + cfg.stiffness_gain * d_stiff
        )
        diastolic += (
            cfg.hr_diastolic_gain * d_hr
            + 0.5 * cfg.augmentation_gain * f.augmentation_index
            + 0.5 * cfg.stiffness_gain * d_stiff
        )
        return systolic, diastolic

    def _bounded(self, systolic: float, diastolic: float) -> Tuple[float, float]:
        """Clamp to physiological bounds with at least the minimum pulse pressure."""
        cfg = self.config
        s_lo, s_hi = cfg.systolic_range
        d_lo, d_hi = cfg.diastolic_range
        pp = cfg.min_pulse_pressure

        if not np.isfinite(systolic) or not np.isfinite(diastolic):
            systolic, diastolic = self._intercepts()
        if systolic - diastolic < pp:
            mid = 0.5 * (systolic + diastolic)
            systolic, diastolic = mid + 0.5 * pp, mid - 0.5 * pp
        systolic = min(s_hi, max(s_lo, systolic))
        diastolic = min(d_hi, max(d_lo, diastolic), systolic - pp)
        systolic = max(systolic, diastolic + pp)
        return float(systolic), float(diastolic)


def _median_features(features: Sequence[PulseFeatures]) -> PulseFeatures:
    table = np.array(
        [
            (f.rise_time, f.pulse_width, f.augmentation_index, f.stiffness_index, f.beat_interval)
            for f in features
        ],
        dtype=np.float64,
    )
    med = np.median(table, axis=0)
    return PulseFeatures(*(float(v) for v in med))

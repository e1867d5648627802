"""
Configuration for the PPG vitals pipeline.

Every tunable constant of the pipeline lives here, next to its unit and
its valid range.  All containers are frozen dataclasses validated on
construction; invalid values raise :class:`ValueError`.  To change a
setting at runtime build a new instance with :meth:`with_updates` and hand
it to the session.

Two groups are user facing:

``ProcessingSettings``
    Detection and measurement thresholds (peak spacing, skin-pixel
    classification, finger gating, minimum SpO2).
``SensitivitySettings``
    Four dimensionless multipliers (amplification, noise reduction, peak
    detection, response time) that scale internal parameters without
    restarting the session.

The remaining ``*Config`` classes group the per-component constants.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from typing import ClassVar, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

Bounds = Dict[str, Tuple[float, float]]


def _check_range(name: str, value: float, low: float, high: float) -> None:
    if not low <= value <= high:
        raise ValueError(f"{name}={value!r} outside valid range [{low}, {high}]")


def _check_positive(name: str, value: float) -> None:
    if not value > 0:
        raise ValueError(f"{name}={value!r} must be positive")


class _BoundedSettings:
    """Mixin for settings whose every field has a closed valid range."""

    BOUNDS: ClassVar[Bounds] = {}

    def __post_init__(self) -> None:
        for f in fields(self):
            low, high = self.BOUNDS[f.name]
            _check_range(f.name, getattr(self, f.name), low, high)

    def with_updates(self, **changes: float):
        """Return a validated copy with *changes* applied."""
        unknown = set(changes) - set(self.BOUNDS)
        if unknown:
            raise ValueError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        return replace(self, **changes)

    @classmethod
    def clamped(cls, **values: float):
        """
        Build an instance from external input, clamping each value into
        its valid range instead of raising.  Unknown keys are ignored.
        """
        kwargs = {}
        for name, value in values.items():
            if name not in cls.BOUNDS:
                logger.warning("Ignoring unknown setting %r", name)
                continue
            low, high = cls.BOUNDS[name]
            bounded = min(max(float(value), low), high)
            if bounded != value:
                logger.warning(
                    "Setting %s=%s clamped to %s", name, value, bounded
                )
            kwargs[name] = bounded
        return cls(**kwargs)


@dataclass(frozen=True)
class ProcessingSettings(_BoundedSettings):
    """
    Detection and measurement thresholds.

    Parameters
    ----------
    measurement_duration_s:
        Length of a full measurement (s).  Only drives the reported
        progress; processing continues after it elapses.
    min_frames_for_calculation:
        Samples that must be buffered before any vital is computed.
    min_peak_distance_ms:
        Refractory period between accepted beats (ms).  300 ms ≈ 200 BPM.
    max_peak_distance_ms:
        Longest plausible inter-beat gap (ms).  Longer silence resets the
        beat detector.
    peak_threshold_factor:
        ``k`` in the adaptive threshold ``mean + k·std``.
    min_red_value:
        Minimum red intensity (0 – 255) of a skin pixel.
    min_red_dominance:
        Minimum ``red / mean(green, blue)`` of a skin pixel.
    min_valid_pixel_ratio:
        Fraction of the ROI that must be skin pixels.
    min_brightness:
        Minimum median red intensity for the finger to count as present.
    finger_detection_delay_ms:
        Finger must be present continuously this long before results
        are produced (ms).
    min_spo2:
        SpO2 readings below this are treated as implausible (%).
    """

    BOUNDS: ClassVar[Bounds] = {
        "measurement_duration_s": (15.0, 60.0),
        "min_frames_for_calculation": (15, 60),
        "min_peak_distance_ms": (200.0, 400.0),
        "max_peak_distance_ms": (1000.0, 3000.0),
        "peak_threshold_factor": (0.2, 0.8),
        "min_red_value": (10.0, 200.0),
        "min_red_dominance": (1.2, 2.0),
        "min_valid_pixel_ratio": (0.1, 0.5),
        "min_brightness": (30.0, 80.0),
        "finger_detection_delay_ms": (500.0, 2000.0),
        "min_spo2": (70.0, 90.0),
    }

    measurement_duration_s: float = 30.0
    min_frames_for_calculation: int = 30
    min_peak_distance_ms: float = 300.0
    max_peak_distance_ms: float = 2000.0
    peak_threshold_factor: float = 0.6
    min_red_value: float = 50.0
    min_red_dominance: float = 1.5
    min_valid_pixel_ratio: float = 0.3
    min_brightness: float = 50.0
    finger_detection_delay_ms: float = 1000.0
    min_spo2: float = 80.0

    def __post_init__(self) -> None:
        super().__post_init__()
        object.__setattr__(
            self, "min_frames_for_calculation", int(self.min_frames_for_calculation)
        )
        if self.min_peak_distance_ms >= self.max_peak_distance_ms:
            raise ValueError("min_peak_distance_ms must be below max_peak_distance_ms")


@dataclass(frozen=True)
class SensitivitySettings(_BoundedSettings):
    """
    Runtime multipliers applied on top of the component constants.

    Parameters
    ----------
    signal_amplification:
        Gain applied to the filtered waveform.
    noise_reduction:
        Scales the Kalman measurement noise; > 1 smooths harder.
    peak_detection:
        Scales the peak threshold factor; > 1 is stricter.
    response_time:
        Scales the heart-rate smoothing window; > 1 responds slower.
    """

    BOUNDS: ClassVar[Bounds] = {
        "signal_amplification": (0.5, 5.0),
        "noise_reduction": (0.5, 2.0),
        "peak_detection": (0.5, 2.0),
        "response_time": (0.5, 2.0),
    }

    signal_amplification: float = 1.0
    noise_reduction: float = 1.0
    peak_detection: float = 1.0
    response_time: float = 1.0


# ---------------------------------------------------------------------------
# Component constants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractorConfig:
    roi_fraction: float = 0.3          # side of centred ROI / min(H, W)
    saturation_level: int = 250        # red above this is clipped sensor
    ir_green_weight: float = 0.8       # proxy-IR = 0.8·G + 0.2·B
    ir_blue_weight: float = 0.2
    quality_threshold: float = 0.3     # minimum quality for finger presence
    max_cv: float = 0.5                # CV at which the uniformity score hits 0
    max_relative_iqr: float = 0.5      # IQR/median at which the spread score hits 0

    def __post_init__(self) -> None:
        _check_range("roi_fraction", self.roi_fraction, 0.2, 0.4)
        _check_range("saturation_level", self.saturation_level, 1, 255)
        _check_range("quality_threshold", self.quality_threshold, 0.0, 1.0)
        _check_positive("max_cv", self.max_cv)
        _check_positive("max_relative_iqr", self.max_relative_iqr)


@dataclass(frozen=True)
class FilterConfig:
    low_hz: float = 0.5                # 30 BPM
    high_hz: float = 4.0               # 240 BPM
    order: int = 2
    outlier_window_s: float = 2.0
    outlier_sigma: float = 2.5
    outlier_min_samples: int = 10
    kalman_q: float = 0.15             # process noise
    kalman_r: float = 0.8              # measurement noise
    baseline_alpha: Optional[float] = 0.02   # None disables EMA baseline removal

    def __post_init__(self) -> None:
        _check_positive("low_hz", self.low_hz)
        if self.high_hz <= self.low_hz:
            raise ValueError("high_hz must exceed low_hz")
        _check_range("order", self.order, 1, 8)
        _check_positive("outlier_sigma", self.outlier_sigma)
        _check_positive("kalman_q", self.kalman_q)
        _check_positive("kalman_r", self.kalman_r)
        if self.baseline_alpha is not None:
            _check_range("baseline_alpha", self.baseline_alpha, 1e-4, 1.0)


@dataclass(frozen=True)
class ArtifactConfig:
    mode: str = "suppress"             # "suppress" or "subtract"
    derivative_window_s: float = 0.5
    snr_window_s: float = 1.0
    derivative_ratio: float = 6.0      # short-term vs. baseline derivative energy
    amplitude_ratio: float = 3.0       # |x| vs. clean envelope
    min_snr_db: float = 0.0
    baseline_alpha: float = 0.02       # EMA rate of the clean baselines
    warmup_s: float = 1.0
    hold_s: float = 0.3                # flag held after criteria clear
    max_artifact_s: float = 2.0        # longer ⇒ downstream reset
    wavelet: str = "db4"

    def __post_init__(self) -> None:
        if self.mode not in ("suppress", "subtract"):
            raise ValueError(f"mode must be 'suppress' or 'subtract', got {self.mode!r}")
        _check_positive("derivative_ratio", self.derivative_ratio)
        _check_positive("amplitude_ratio", self.amplitude_ratio)
        _check_range("baseline_alpha", self.baseline_alpha, 1e-4, 1.0)
        _check_positive("max_artifact_s", self.max_artifact_s)


@dataclass(frozen=True)
class PeakDetectorConfig:
    window_s: float = 2.0              # trailing window for threshold stats
    local_max_samples: int = 5
    rise_samples: int = 4              # shape check before the candidate
    min_rises: int = 3
    fall_samples: int = 2              # shape check after the candidate
    threshold_rate: float = 0.3        # EMA rate of the adaptive threshold
    threshold_max_sigma: float = 3.0   # upper bound: mean + 3·std
    interval_tolerance: float = 0.3    # |interval − mean| / mean
    interval_history: int = 4          # intervals averaged for the tolerance
    bpm_intervals: int = 8             # intervals averaged for time-domain BPM
    max_missed_beats: int = 3          # re-anchor on 2× … N× the mean interval

    def __post_init__(self) -> None:
        _check_range("local_max_samples", self.local_max_samples, 3, 15)
        _check_range("min_rises", self.min_rises, 1, self.rise_samples)
        _check_range("threshold_rate", self.threshold_rate, 0.01, 1.0)
        _check_range("interval_tolerance", self.interval_tolerance, 0.05, 1.0)


@dataclass(frozen=True)
class SpectrumConfig:
    low_hz: float = 0.5
    high_hz: float = 4.0
    window_s: float = 10.0
    min_window_s: float = 5.0
    min_fft_size: int = 1024
    update_every: int = 5              # frames between recomputations
    edge_penalty: float = 0.5          # confidence factor for band-edge peaks

    def __post_init__(self) -> None:
        _check_positive("low_hz", self.low_hz)
        if self.high_hz <= self.low_hz:
            raise ValueError("high_hz must exceed low_hz")
        if self.min_window_s > self.window_s:
            raise ValueError("min_window_s must not exceed window_s")
        _check_range("update_every", self.update_every, 1, 300)


@dataclass(frozen=True)
class FusionConfig:
    min_bpm: float = 40.0
    max_bpm: float = 200.0
    max_jump_bpm: float = 25.0         # per update, when confidence is low
    jump_confidence: float = 0.8       # confident estimates bypass the jump limiter
    max_jump_rejections: int = 15
    history: int = 30
    smoothing_window: int = 5          # scaled by SensitivitySettings.response_time

    def __post_init__(self) -> None:
        if not 0 < self.min_bpm < self.max_bpm:
            raise ValueError("require 0 < min_bpm < max_bpm")
        _check_range("smoothing_window", self.smoothing_window, 1, self.history)


@dataclass(frozen=True)
class SpO2Config:
    window_s: float = 3.0
    min_window_s: float = 1.0
    update_every: int = 30             # samples between recomputations
    coefficient_a: float = 110.0       # SpO2 = a − b·R
    coefficient_b: float = 25.0
    min_value: float = 70.0
    max_value: float = 100.0
    min_perfusion: float = 0.0005      # AC/DC floor
    full_perfusion: float = 0.01       # AC/DC giving full confidence

    def __post_init__(self) -> None:
        if not 0 < self.min_window_s <= self.window_s:
            raise ValueError("require 0 < min_window_s <= window_s")
        if not self.min_value < self.max_value:
            raise ValueError("min_value must be below max_value")
        _check_positive("full_perfusion", self.full_perfusion)


@dataclass(frozen=True)
class BloodPressureConfig:
    window_s: float = 6.0
    default_systolic: float = 120.0
    default_diastolic: float = 80.0
    systolic_range: Tuple[float, float] = (90.0, 180.0)
    diastolic_range: Tuple[float, float] = (60.0, 120.0)
    min_pulse_pressure: float = 25.0
    notch_search: Tuple[float, float] = (0.3, 0.7)   # fraction of the beat segment
    reference_hr: float = 70.0
    hr_systolic_gain: float = 0.5      # mmHg per BPM
    hr_diastolic_gain: float = 0.3
    rise_time_reference_s: float = 0.15
    rise_systolic_gain: float = -30.0  # mmHg per second of extra rise time
    augmentation_gain: float = 10.0    # mmHg per unit augmentation index
    stiffness_reference: float = 8.0   # m/s
    stiffness_gain: float = 1.5        # mmHg per m/s of stiffness index
    default_height_cm: float = 170.0   # stiffness index body height when unknown
    age_reference: float = 40.0
    age_systolic_gain: float = 0.4     # mmHg per year
    age_diastolic_gain: float = 0.2
    bmi_reference: float = 24.0
    bmi_systolic_gain: float = 0.8     # mmHg per kg/m²
    bmi_diastolic_gain: float = 0.5
    smoothing: int = 5

    def __post_init__(self) -> None:
        for name, (low, high) in (
            ("systolic_range", self.systolic_range),
            ("diastolic_range", self.diastolic_range),
            ("notch_search", self.notch_search),
        ):
            if not low < high:
                raise ValueError(f"{name} must be an increasing pair")
        _check_positive("min_pulse_pressure", self.min_pulse_pressure)


@dataclass(frozen=True)
class HRVConfig:
    min_intervals: int = 5
    sdnn_threshold_ms: float = 100.0
    rmssd_threshold_ms: float = 50.0
    pnn50_threshold: float = 40.0      # %
    tachycardia_ms: float = 600.0      # mean RR below ⇒ > 100 BPM
    bradycardia_ms: float = 1000.0     # mean RR above ⇒ < 60 BPM
    af_sdnn_ms: float = 150.0
    af_rmssd_ms: float = 70.0
    af_variability: float = 0.2
    resample_hz: float = 4.0
    min_spectral_span_s: float = 15.0
    lf_band: Tuple[float, float] = (0.04, 0.15)
    hf_band: Tuple[float, float] = (0.15, 0.4)
    min_hf_fraction: float = 1e-3     # HF share of LF+HF below which LF/HF reads 0

    def __post_init__(self) -> None:
        _check_range("min_intervals", self.min_intervals, 2, 100)
        if self.tachycardia_ms >= self.bradycardia_ms:
            raise ValueError("tachycardia_ms must be below bradycardia_ms")


@dataclass(frozen=True)
class RespirationConfig:
    low_hz: float = 0.1                # 6 breaths/min
    high_hz: float = 0.5               # 30 breaths/min
    window_s: float = 16.0            # bounded by the signal buffer span
    min_window_s: float = 12.0
    update_every: int = 30
    min_rate: float = 4.0
    max_rate: float = 40.0


@dataclass(frozen=True)
class CalibrationProfile:
    """
    Per-user reference data used by the blood-pressure model.

    Any field left as ``None`` falls back to the population defaults.
    """

    age: Optional[float] = None
    height_cm: Optional[float] = None
    weight_kg: Optional[float] = None
    reference_systolic: Optional[float] = None
    reference_diastolic: Optional[float] = None

    def __post_init__(self) -> None:
        if self.age is not None:
            _check_range("age", self.age, 1, 120)
        if self.height_cm is not None:
            _check_range("height_cm", self.height_cm, 50, 250)
        if self.weight_kg is not None:
            _check_range("weight_kg", self.weight_kg, 10, 300)
        if self.reference_systolic is not None:
            _check_range("reference_systolic", self.reference_systolic, 70, 250)
        if self.reference_diastolic is not None:
            _check_range("reference_diastolic", self.reference_diastolic, 40, 150)
        if (
            self.reference_systolic is not None
            and self.reference_diastolic is not None
            and self.reference_systolic <= self.reference_diastolic
        ):
            raise ValueError("reference_systolic must exceed reference_diastolic")

    @property
    def bmi(self) -> Optional[float]:
        if self.height_cm is None or self.weight_kg is None:
            return None
        metres = self.height_cm / 100.0
        return self.weight_kg / (metres * metres)


@dataclass(frozen=True)
class PipelineConfig:
    """Everything a :class:`~ppg_vitals.pipeline.VitalsSession` needs."""

    sample_rate: float = 30.0          # nominal frame rate (Hz)
    buffer_capacity: int = 512         # samples kept per signal column
    beat_history: int = 30
    tuning_interval: int = 30          # frames between tuner proposals
    max_tuning_step: float = 0.1       # fractional change per proposal
    settings: ProcessingSettings = field(default_factory=ProcessingSettings)
    sensitivity: SensitivitySettings = field(default_factory=SensitivitySettings)
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    artifact: ArtifactConfig = field(default_factory=ArtifactConfig)
    peaks: PeakDetectorConfig = field(default_factory=PeakDetectorConfig)
    spectrum: SpectrumConfig = field(default_factory=SpectrumConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    spo2: SpO2Config = field(default_factory=SpO2Config)
    blood_pressure: BloodPressureConfig = field(default_factory=BloodPressureConfig)
    hrv: HRVConfig = field(default_factory=HRVConfig)
    respiration: RespirationConfig = field(default_factory=RespirationConfig)

    def __post_init__(self) -> None:
        _check_range("sample_rate", self.sample_rate, 5.0, 240.0)
        _check_range("buffer_capacity", self.buffer_capacity, 64, 1 << 16)
        if self.filter.high_hz >= self.sample_rate / 2.0:
            raise ValueError("filter.high_hz must be below the Nyquist frequency")
        _check_range("max_tuning_step", self.max_tuning_step, 0.0, 1.0)

    def with_updates(self, **changes) -> "PipelineConfig":
        return replace(self, **changes)

"""
Value types passed between pipeline stages.

Frames are the only mutable input; everything produced by the pipeline
is an immutable record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

from ppg_vitals.config import CalibrationProfile


@dataclass(frozen=True, eq=False)
class FrameSample:
    """
    One camera frame.

    Parameters
    ----------
    image:
        BGR image array (H × W × 3, uint8), the layout OpenCV delivers.
    timestamp:
        Capture time in seconds (monotonic clock).
    """

    image: np.ndarray
    timestamp: float

    def __post_init__(self) -> None:
        img = self.image
        if not isinstance(img, np.ndarray) or img.ndim != 3 or img.shape[2] != 3:
            raise ValueError("image must be an H × W × 3 array")
        if img.dtype != np.uint8:
            raise ValueError(f"image must be uint8, got {img.dtype}")
        if img.shape[0] == 0 or img.shape[1] == 0:
            raise ValueError("image must not be empty")
        if not np.isfinite(self.timestamp):
            raise ValueError("timestamp must be finite")


@dataclass(frozen=True)
class ChannelReading:
    """Per-frame ROI summary produced by the extractor."""

    red: float
    proxy_ir: float
    quality: float
    finger_present: bool
    timestamp: float
    valid_ratio: float = 0.0

    @classmethod
    def empty(cls, timestamp: float) -> "ChannelReading":
        return cls(0.0, 0.0, 0.0, False, timestamp)


@dataclass(frozen=True)
class BeatEvent:
    """
    A validated heartbeat.

    ``interval`` is the inter-beat interval (s) ending at this beat, or
    ``None`` for the first beat after a reset or a re-anchored beat that
    followed missed detections.
    """

    timestamp: float
    amplitude: float
    quality: float
    interval: Optional[float] = None


@dataclass(frozen=True)
class HRVMetrics:
    sdnn: float = 0.0      # ms
    rmssd: float = 0.0     # ms
    pnn50: float = 0.0     # %
    lf_hf: float = 0.0


class ArrhythmiaType(str, Enum):
    NORMAL = "normal"
    TACHYCARDIA = "tachycardia"
    BRADYCARDIA = "bradycardia"
    ATRIAL_FIBRILLATION_LIKE = "atrial-fibrillation-like"
    SINUS_ARRHYTHMIA = "sinus-arrhythmia"
    UNSPECIFIED = "unspecified"


@dataclass(frozen=True)
class VitalsRecord:
    """
    One output record per processed frame.

    A value of 0 for ``bpm``, ``spo2``, ``systolic`` or ``diastolic``
    means "no reading".  ``confidence`` refers to the heart rate and is 0
    whenever perfusion is under the pulsatility floor.
    """

    timestamp: float
    bpm: float = 0.0
    spo2: float = 0.0
    spo2_confidence: float = 0.0
    systolic: float = 0.0
    diastolic: float = 0.0
    has_arrhythmia: bool = False
    arrhythmia_type: ArrhythmiaType = ArrhythmiaType.NORMAL
    signal_quality: float = 0.0
    confidence: float = 0.0
    is_peak: bool = False
    hrv_metrics: HRVMetrics = field(default_factory=HRVMetrics)
    finger_present: bool = False
    motion_artifact: bool = False
    respiration_rate: float = 0.0   # breaths/min
    respiration_confidence: float = 0.0
    perfusion_index: float = 0.0   # %
    measurement_progress: float = 0.0

    @classmethod
    def empty(cls, timestamp: float, **status) -> "VitalsRecord":
        """
        The "no reading" record.  *status* may set non-vital fields such as
        ``signal_quality``, ``finger_present`` or ``measurement_progress``.
        """
        return cls(timestamp=timestamp, **status)

    @property
    def has_reading(self) -> bool:
        return self.bpm > 0


@dataclass(frozen=True)
class CalibrationState:
    """Blood-pressure calibration fitted by an explicit calibration call."""

    profile: CalibrationProfile = field(default_factory=CalibrationProfile)
    systolic_offset: float = 0.0
    diastolic_offset: float = 0.0
    calibrated: bool = False

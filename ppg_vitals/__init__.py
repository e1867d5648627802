"""
PPG Vitals – fingertip photoplethysmography from camera frames.

Press a fingertip against the camera lens (with the torch on); each frame
is reduced to red / proxy-IR channel means and turned into heart rate,
SpO2, blood pressure, HRV and rhythm classification.
"""

from ppg_vitals.config import (
    CalibrationProfile,
    PipelineConfig,
    ProcessingSettings,
    SensitivitySettings,
)
from ppg_vitals.pipeline import VitalsSession
from ppg_vitals.types import ArrhythmiaType, BeatEvent, FrameSample, VitalsRecord

__version__ = "0.1.0"
__author__ = "ppg_vitals"

__all__ = [
    "ArrhythmiaType",
    "BeatEvent",
    "CalibrationProfile",
    "FrameSample",
    "PipelineConfig",
    "ProcessingSettings",
    "SensitivitySettings",
    "VitalsRecord",
    "VitalsSession",
]

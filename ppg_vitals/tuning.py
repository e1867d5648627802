"""
Pluggable sensitivity tuning.

A tuner looks at recent output and proposes new sensitivity multipliers.
The session never applies a proposal as-is: each field may move by at
most a fixed fraction per step and the result is clamped into the valid
range, so a misbehaving tuner can only drift the pipeline slowly.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Mapping

from ppg_vitals.config import SensitivitySettings
from ppg_vitals.types import VitalsRecord

logger = logging.getLogger(__name__)


class SettingsTuner(ABC):
    """Strategy interface for sensitivity tuning."""

    @abstractmethod
    def propose(self, record: VitalsRecord, current: SensitivitySettings) -> Mapping[str, float]:
        """
        Return the sensitivity fields to change.  Missing fields keep their
        current value.
        """


class QualityTuner(SettingsTuner):
    """
    Simple rule-based tuner.

    Raises amplification when the signal is clean but no reading has been
    produced yet, and raises noise reduction when quality is poor.  Relaxes
    both back toward 1.0 once readings are confident.
    """

    def __init__(self, low_quality: float = 0.5, confident: float = 0.7) -> None:
        self.low_quality = low_quality
        self.confident = confident

    def propose(self, record: VitalsRecord, current: SensitivitySettings) -> Mapping[str, float]:
        if not record.finger_present:
            return {}
        if record.signal_quality < self.low_quality:
            return {"noise_reduction": current.noise_reduction * 1.1}
        if record.bpm <= 0:
            return {"signal_amplification": current.signal_amplification * 1.1}
        if record.confidence >= self.confident:
            return {
                "signal_amplification": _toward_one(current.signal_amplification),
                "noise_reduction": _toward_one(current.noise_reduction),
            }
        return {}


def _toward_one(value: float, rate: float = 0.05) -> float:
    return value + rate * (1.0 - value)


def apply_bounded(
    current: SensitivitySettings,
    proposal: Mapping[str, float],
    max_step: float,
) -> SensitivitySettings:
    """
    Apply *proposal* to *current*, limiting each field to a relative change
    of ``max_step`` and clamping into the valid range.
    """
    values = {}
    for name, target in proposal.items():
        if name not in SensitivitySettings.BOUNDS:
            logger.warning("Tuner proposed unknown setting %r; ignored", name)
            continue
        now = getattr(current, name)
        step = max_step * abs(now)
        values[name] = min(now + step, max(now - step, float(target)))
    if not values:
        return current
    merged = {f: getattr(current, f) for f in SensitivitySettings.BOUNDS}
    merged.update(values)
    return SensitivitySettings.clamped(**merged)

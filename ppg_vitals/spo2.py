"""
Oxygen saturation from the ratio of ratios.

For each channel the DC component is the window mean and the AC
(pulsatile) component is the RMS of the zero-phase band-passed window.

    R    = (AC_red / DC_red) / (AC_ir / DC_ir)
    SpO2 = a − b·R            (default 110 − 25·R)

clamped to [70, 100].  The "IR" channel is the green/blue proxy from the
extractor, so values are indicative only.

Confidence scales with perfusion (AC/DC of the red channel) and window
completeness.  Below the perfusion floor, or when the reading falls under
the configured minimum, the last valid value is kept with zero
confidence.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
from scipy.signal import butter, sosfiltfilt

from ppg_vitals.config import ProcessingSettings, SpO2Config

logger = logging.getLogger(__name__)

_EPS = 1e-9


class SpO2Estimator:
    """
    Windowed SpO2 estimator.

    Parameters
    ----------
    sample_rate:
        Nominal sample rate (Hz) of the red / proxy-IR traces.
    config:
        Window lengths, calibration curve and perfusion constants.
    settings:
        ``min_spo2`` marks the lowest plausible reading.
    """

    def __init__(
        self,
        sample_rate: float = 30.0,
        config: Optional[SpO2Config] = None,
        settings: Optional[ProcessingSettings] = None,
        low_hz: float = 0.5,
        high_hz: float = 4.0,
    ) -> None:
        self.sample_rate = sample_rate
        self.config = config or SpO2Config()
        self.settings = settings or ProcessingSettings()
        nyq = sample_rate / 2.0
        self._sos = butter(2, [low_hz / nyq, min(high_hz / nyq, 0.99)], btype="bandpass", output="sos")
        self._padlen = 3 * (2 * len(self._sos) + 1)
        self.reset()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def update(self, red: np.ndarray, ir: np.ndarray) -> Tuple[float, float]:
        """
        Feed the latest red / proxy-IR windows (one call per sample).

        The estimate is recomputed every ``update_every`` calls once at
        least ``min_window_s`` of data is available; otherwise the cached
        ``(spo2, confidence)`` is returned.
        """
        self._pending += 1
        min_samples = max(self._padlen + 1, int(self.config.min_window_s * self.sample_rate))
        if len(red) < min_samples:
            return self._last_spo2, 0.0
        if self._computed and self._pending < self.config.update_every:
            return self._last_spo2, self._last_confidence
        self._pending = 0
        self._computed = True
        self._last_spo2, self._last_confidence = self.estimate(red, ir)
        return self._last_spo2, self._last_confidence

    def estimate(self, red: np.ndarray, ir: np.ndarray) -> Tuple[float, float]:
        """
        Compute ``(spo2, confidence)`` from equal-length windows.

        Returns the last valid value with zero confidence when perfusion
        is too low or the result is implausible; 0.0 means no reading.
        """
        red = np.asarray(red, dtype=np.float64)
        ir = np.asarray(ir, dtype=np.float64)
        if red.size != ir.size:
            raise ValueError("red and ir windows must have the same length")
        window = int(self.config.window_s * self.sample_rate)
        red, ir = red[-window:], ir[-window:]
        if red.size <= self._padlen:
            return self._last_valid, 0.0

        try:
            dc_red = float(red.mean())
            dc_ir = float(ir.mean())
            if dc_red < _EPS or dc_ir < _EPS:
                self._perfusion = 0.0
                return self._last_valid, 0.0

            ac_red = float(np.sqrt(np.mean(sosfiltfilt(self._sos, red - dc_red) ** 2)))
            ac_ir = float(np.sqrt(np.mean(sosfiltfilt(self._sos, ir - dc_ir) ** 2)))
            pi_red = ac_red / dc_red
            pi_ir = ac_ir / dc_ir
            self._perfusion = pi_red

            if pi_red < self.config.min_perfusion or pi_ir < _EPS:
                logger.debug("Perfusion %.5f below floor; keeping last SpO2", pi_red)
                return self._last_valid, 0.0

            ratio = pi_red / pi_ir
            spo2 = self.config.coefficient_a - self.config.coefficient_b * ratio
            spo2 = max(self.config.min_value, min(self.config.max_value, spo2))
            if spo2 < self.settings.min_spo2:
                logger.debug("SpO2 %.1f below minimum %.1f; keeping last", spo2, self.settings.min_spo2)
                return self._last_valid, 0.0

            completeness = min(1.0, red.size / max(1, window))
            confidence = min(1.0, pi_red / self.config.full_perfusion) * completeness
            self._last_valid = float(spo2)
            return self._last_valid, float(confidence)

        except Exception as e:
            logger.warning("SpO2 calculation failed: %s", e)
            return self._last_valid, 0.0

    def update_settings(self, settings: ProcessingSettings) -> None:
        self.settings = settings

    def reset(self) -> None:
        self._last_valid: float = 0.0
        self._last_spo2: float = 0.0
        self._last_confidence: float = 0.0
        self._perfusion: float = 0.0
        self._pending = 0
        self._computed = False

    @property
    def perfusion_index(self) -> float:
        """Red-channel AC/DC of the last computation, in percent."""
        return 100.0 * self._perfusion

    @property
    def low_perfusion(self) -> bool:
        """True when the last computation found perfusion under the floor."""
        return self._computed and self._perfusion < self.config.min_perfusion

    @property
    def last_spo2(self) -> float:
        return self._last_spo2

"""
Frame channel extractor.

When a fingertip covers the lens (torch on), the centre of the frame is a
nearly uniform field of red, translucent tissue.  Each frame is reduced to:

- the mean red intensity of skin-like pixels in a centred square ROI,
- a proxy-IR value (0.8·green + 0.2·blue) over the same pixels,
- a quality score in [0, 1] built from coverage, uniformity (CV) and
  spread (IQR of the red histogram),
- a finger-present flag.

A pixel counts as skin-like when its red value is bright enough, not
saturated, and dominates the mean of green and blue.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from ppg_vitals.config import ExtractorConfig, ProcessingSettings
from ppg_vitals.types import ChannelReading, FrameSample

logger = logging.getLogger(__name__)


class ChannelExtractor:
    """
    Reduce a frame to a :class:`~ppg_vitals.types.ChannelReading`.

    Parameters
    ----------
    settings:
        Skin-pixel thresholds (``min_red_value``, ``min_red_dominance``,
        ``min_valid_pixel_ratio``, ``min_brightness``).
    config:
        ROI size, saturation level and quality constants.
    """

    def __init__(
        self,
        settings: Optional[ProcessingSettings] = None,
        config: Optional[ExtractorConfig] = None,
    ) -> None:
        self.settings = settings or ProcessingSettings()
        self.config = config or ExtractorConfig()
        # Scratch arrays keyed by ROI shape; reused across frames
        self._scratch: Dict[Tuple[int, int], Tuple[np.ndarray, ...]] = {}
        self._last_quality: float = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def extract(self, frame: FrameSample) -> ChannelReading:
        """
        Extract the ROI channel means and quality from *frame*.

        Frames with no qualifying pixels yield a zero reading with
        ``finger_present=False``.
        """
        roi = self._roi(frame.image)
        mask = self._skin_mask(roi)
        n_valid = int(cv2.countNonZero(mask))
        n_total = mask.shape[0] * mask.shape[1]
        valid_ratio = n_valid / n_total

        if n_valid == 0:
            self._last_quality = 0.0
            return ChannelReading.empty(frame.timestamp)

        mean_b, mean_g, mean_r, _ = cv2.mean(roi, mask=mask)
        proxy_ir = self.config.ir_green_weight * mean_g + self.config.ir_blue_weight * mean_b

        hist = cv2.calcHist([roi], [2], mask, [256], [0, 256]).ravel()
        median, iqr, hist_mean, hist_std = _histogram_stats(hist)

        quality = self._quality(valid_ratio, median, iqr, hist_mean, hist_std)
        finger = (
            quality >= self.config.quality_threshold
            and median >= self.settings.min_brightness
        )
        self._last_quality = quality

        return ChannelReading(
            red=float(mean_r),
            proxy_ir=float(proxy_ir),
            quality=quality,
            finger_present=bool(finger),
            timestamp=frame.timestamp,
            valid_ratio=valid_ratio,
        )

    def update_settings(self, settings: ProcessingSettings) -> None:
        self.settings = settings

    @property
    def last_quality(self) -> float:
        return self._last_quality

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _roi(self, image: np.ndarray) -> np.ndarray:
        h, w = image.shape[:2]
        side = max(1, int(self.config.roi_fraction * min(h, w)))
        top = (h - side) // 2
        left = (w - side) // 2
        return np.ascontiguousarray(image[top:top + side, left:left + side])

    def _skin_mask(self, roi: np.ndarray) -> np.ndarray:
        """uint8 mask (255 = skin-like) computed in preallocated scratch space."""
        shape = roi.shape[:2]
        scratch = self._scratch.get(shape)
        if scratch is None:
            scratch = (
                np.empty(shape, dtype=np.float32),   # red
                np.empty(shape, dtype=np.float32),   # dominance limit
                np.empty(shape, dtype=bool),
                np.empty(shape, dtype=bool),
                np.empty(shape, dtype=np.uint8),
            )
            self._scratch = {shape: scratch}
        red, limit, ok, tmp, mask = scratch

        np.copyto(red, roi[:, :, 2], casting="unsafe")
        np.add(roi[:, :, 0], roi[:, :, 1], out=limit, dtype=np.float32)
        np.multiply(limit, 0.5 * self.settings.min_red_dominance, out=limit)

        np.greater_equal(red, self.settings.min_red_value, out=ok)
        np.less_equal(red, self.config.saturation_level, out=tmp)
        np.logical_and(ok, tmp, out=ok)
        np.greater_equal(red, limit, out=tmp)
        np.logical_and(ok, tmp, out=ok)

        np.multiply(ok, 255, out=mask, casting="unsafe")
        return mask

    def _quality(
        self,
        valid_ratio: float,
        median: float,
        iqr: float,
        mean: float,
        std: float,
    ) -> float:
        coverage = valid_ratio if valid_ratio >= self.settings.min_valid_pixel_ratio else 0.0
        cv = std / mean if mean > 1e-6 else float("inf")
        rel_iqr = iqr / median if median > 1e-6 else float("inf")
        cv_score = max(0.0, 1.0 - cv / self.config.max_cv)
        iqr_score = max(0.0, 1.0 - rel_iqr / self.config.max_relative_iqr)
        quality = coverage * (0.5 * cv_score + 0.5 * iqr_score)
        return float(min(1.0, max(0.0, quality)))


def _histogram_stats(hist: np.ndarray) -> Tuple[float, float, float, float]:
    """Return ``(median, iqr, mean, std)`` of a 256-bin intensity histogram."""
    total = float(hist.sum())
    if total <= 0:
        return 0.0, 0.0, 0.0, 0.0
    levels = np.arange(hist.size, dtype=np.float64)
    cumulative = np.cumsum(hist)
    q1, median, q3 = (
        float(np.searchsorted(cumulative, q * total, side="left"))
        for q in (0.25, 0.5, 0.75)
    )
    mean = float(np.dot(levels, hist) / total)
    var = float(np.dot((levels - mean) ** 2, hist) / total)
    return median, q3 - q1, mean, float(np.sqrt(var))

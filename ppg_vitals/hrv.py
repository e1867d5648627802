"""
Heart-rate variability and a heuristic rhythm classifier.

Time-domain metrics come straight from the validated RR intervals:

- SDNN  – sample standard deviation of RR (ms)
- RMSSD – root mean square of successive differences (ms)
- pNN50 – percentage of successive differences above 50 ms

LF/HF is computed from the RR series resampled onto a 4 Hz grid with a
cubic spline, using Welch's PSD (LF 0.04 – 0.15 Hz, HF 0.15 – 0.4 Hz).
Short series (under ~15 s) report 0.

The classifier is a small threshold table, not a diagnosis.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.integrate import trapezoid
from scipy.interpolate import CubicSpline
from scipy.signal import welch

from ppg_vitals.config import HRVConfig
from ppg_vitals.types import ArrhythmiaType, HRVMetrics

logger = logging.getLogger(__name__)


def time_domain_metrics(rr_ms: np.ndarray) -> Tuple[float, float, float]:
    """Return ``(sdnn, rmssd, pnn50)`` for RR intervals in milliseconds."""
    if rr_ms.size < 2:
        return 0.0, 0.0, 0.0
    diffs = np.diff(rr_ms)
    sdnn = float(np.std(rr_ms, ddof=1))
    rmssd = float(np.sqrt(np.mean(diffs ** 2)))
    pnn50 = float(100.0 * np.count_nonzero(np.abs(diffs) > 50.0) / diffs.size)
    return sdnn, rmssd, pnn50


def lf_hf_ratio(rr_ms: np.ndarray, config: Optional[HRVConfig] = None) -> float:
    """
    LF/HF power ratio of an RR series; 0.0 when the series is too short
    or its HF power is a negligible share of the total.
    """
    cfg = config or HRVConfig()
    if rr_ms.size < 4:
        return 0.0
    beat_times = np.cumsum(rr_ms) / 1000.0
    beat_times -= beat_times[0]
    span = float(beat_times[-1])
    if span < cfg.min_spectral_span_s:
        return 0.0

    try:
        grid = np.arange(0.0, span, 1.0 / cfg.resample_hz)
        series = CubicSpline(beat_times, rr_ms)(grid)
        series -= series.mean()
        freqs, psd = welch(series, fs=cfg.resample_hz, nperseg=min(series.size, 256))
        lf = _band_power(freqs, psd, cfg.lf_band)
        hf = _band_power(freqs, psd, cfg.hf_band)
    except ValueError as e:
        logger.warning("LF/HF calculation failed: %s", e)
        return 0.0

    # HF under min_hf_fraction of the total is window leakage, not power
    total = lf + hf
    if total <= 1e-12 or hf <= cfg.min_hf_fraction * total:
        return 0.0
    return float(lf / hf)


def _band_power(freqs: np.ndarray, psd: np.ndarray, band: Tuple[float, float]) -> float:
    mask = (freqs >= band[0]) & (freqs < band[1])
    if not mask.any():
        return 0.0
    return float(trapezoid(psd[mask], freqs[mask])) if mask.sum() > 1 else float(psd[mask].sum())


class HRVAnalyzer:
    """
    Compute HRV metrics and classify the rhythm.

    Parameters
    ----------
    config:
        Thresholds for the arrhythmia flag and the class table.
    """

    def __init__(self, config: Optional[HRVConfig] = None) -> None:
        self.config = config or HRVConfig()

    def analyze(self, intervals: Sequence[float]) -> Tuple[HRVMetrics, bool, ArrhythmiaType]:
        """
        Parameters
        ----------
        intervals:
            Validated inter-beat intervals in seconds, oldest first.

        Returns
        -------
        metrics, has_arrhythmia, arrhythmia_type
        """
        rr_ms = 1000.0 * np.asarray(intervals, dtype=np.float64)
        sdnn, rmssd, pnn50 = time_domain_metrics(rr_ms)
        metrics = HRVMetrics(sdnn=sdnn, rmssd=rmssd, pnn50=pnn50, lf_hf=lf_hf_ratio(rr_ms, self.config))

        if rr_ms.size < self.config.min_intervals:
            return metrics, False, ArrhythmiaType.NORMAL
        if not self.is_irregular(metrics):
            return metrics, False, ArrhythmiaType.NORMAL
        kind = self.classify(rr_ms, metrics)
        logger.debug("Irregular rhythm: %s (%s)", kind.value, metrics)
        return metrics, True, kind

    def is_irregular(self, metrics: HRVMetrics) -> bool:
        cfg = self.config
        return (
            metrics.sdnn > cfg.sdnn_threshold_ms
            or metrics.rmssd > cfg.rmssd_threshold_ms
            or metrics.pnn50 > cfg.pnn50_threshold
        )

    def classify(self, rr_ms: np.ndarray, metrics: HRVMetrics) -> ArrhythmiaType:
        cfg = self.config
        mean_rr = float(rr_ms.mean())
        variability = float(np.mean(np.abs(np.diff(rr_ms))) / mean_rr) if mean_rr > 0 else 0.0

        if mean_rr < cfg.tachycardia_ms:
            return ArrhythmiaType.TACHYCARDIA
        if mean_rr > cfg.bradycardia_ms:
            return ArrhythmiaType.BRADYCARDIA
        if (
            metrics.sdnn > cfg.af_sdnn_ms
            and metrics.rmssd > cfg.af_rmssd_ms
            and variability > cfg.af_variability
        ):
            return ArrhythmiaType.ATRIAL_FIBRILLATION_LIKE
        if 0.0 < metrics.lf_hf < 1.0 and variability <= cfg.af_variability:
            return ArrhythmiaType.SINUS_ARRHYTHMIA
        return ArrhythmiaType.UNSPECIFIED

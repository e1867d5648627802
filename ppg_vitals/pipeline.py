"""
Measurement session: one frame in, one :class:`VitalsRecord` out.

Per frame
---------
1. Extract red / proxy-IR means, quality and finger presence.
2. Gate on finger presence and the finger-detection delay.  Losing the
   finger clears all transient state.
3. Filter the red trace, flag motion artifacts and buffer the sample.
4. Detect beats on the cleaned waveform; periodically estimate the
   dominant frequency; fuse both into a validated heart rate.
5. Update SpO2, blood pressure (on each new beat), HRV / rhythm class
   (on each new beat) and respiratory rate.

A session owns all of its buffers and filter state.  ``start()`` builds
fresh state, ``stop()`` releases it, so replaying the same frames after a
restart gives identical records.  Internal faults never escape
:meth:`VitalsSession.process_frame`; they are logged and the frame is
reported as a no-reading record.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Optional, Tuple

from ppg_vitals.artifacts import MotionCompensator
from ppg_vitals.blood_pressure import BloodPressureEstimator
from ppg_vitals.buffers import SignalBuffer
from ppg_vitals.config import (
    CalibrationProfile,
    PipelineConfig,
    ProcessingSettings,
    SensitivitySettings,
)
from ppg_vitals.extractor import ChannelExtractor
from ppg_vitals.filters import SignalFilter
from ppg_vitals.fusion import HeartRateFusion
from ppg_vitals.hrv import HRVAnalyzer
from ppg_vitals.peaks import PeakDetector
from ppg_vitals.respiration import RespirationEstimator
from ppg_vitals.spectrum import FrequencyEstimator
from ppg_vitals.spo2 import SpO2Estimator
from ppg_vitals.tuning import SettingsTuner, apply_bounded
from ppg_vitals.types import (
    ArrhythmiaType,
    BeatEvent,
    CalibrationState,
    FrameSample,
    HRVMetrics,
    VitalsRecord,
)

logger = logging.getLogger(__name__)


class VitalsSession:
    """
    Frame-synchronous vitals pipeline for one measurement session.

    Parameters
    ----------
    config:
        Pipeline configuration; defaults are tuned for ~30 fps.
    tuner:
        Optional sensitivity tuner consulted every
        ``config.tuning_interval`` frames.  Its proposals are rate-limited
        and clamped before being applied.

    Example
    -------
    >>> with VitalsSession() as session:
    ...     for frame in frames:
    ...         record = session.process_frame(frame)
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        tuner: Optional[SettingsTuner] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.tuner = tuner
        self._settings = self.config.settings
        self._base_sensitivity = self.config.sensitivity
        self._sensitivity = self._base_sensitivity
        self._calibration = CalibrationState()
        self._running = False
        self._fault_count = 0
        self._release()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Allocate buffers and reset all filter, threshold and history state."""
        if self._running:
            logger.warning("Session already running; restarting with fresh state")
        cfg = self.config
        fs = cfg.sample_rate
        self._sensitivity = self._base_sensitivity

        self._buffer = SignalBuffer(cfg.buffer_capacity)
        self._extractor = ChannelExtractor(self._settings, cfg.extractor)
        self._filter = SignalFilter(fs, cfg.filter, self._sensitivity)
        self._compensator = MotionCompensator(fs, cfg.artifact)
        self._peaks = PeakDetector(fs, self._settings, cfg.peaks, self._sensitivity)
        self._spectrum = FrequencyEstimator.from_config(cfg.spectrum)
        self._fusion = HeartRateFusion(cfg.fusion, self._sensitivity)
        self._spo2 = SpO2Estimator(fs, cfg.spo2, self._settings, cfg.filter.low_hz, cfg.filter.high_hz)
        self._bp = BloodPressureEstimator(cfg.blood_pressure, self._calibration)
        self._hrv = HRVAnalyzer(cfg.hrv)
        self._respiration = RespirationEstimator(cfg.respiration)
        self._beats = deque(maxlen=cfg.beat_history)

        self._clear_transient()
        self._frame_count = 0
        self._fault_count = 0
        self._running = True
        logger.info("Vitals session started (%.0f Hz nominal)", fs)

    def stop(self) -> None:
        """Release all buffers; a later :meth:`start` begins clean."""
        if not self._running:
            return
        self._running = False
        self._buffer.clear()
        self._release()
        logger.info("Vitals session stopped")

    def __enter__(self) -> "VitalsSession":
        self.start()
        return self

    def __exit__(self, *_) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process_frame(self, frame: FrameSample) -> VitalsRecord:
        """
        Process one frame and return its vitals record.

        Raises
        ------
        RuntimeError
            If the session has not been started.
        """
        if not self._running:
            raise RuntimeError("Session not running. Call start() first.")
        self._frame_count += 1

        if frame.timestamp < self._buffer.last_timestamp:
            logger.warning(
                "Dropping out-of-order frame (t=%.3f s < %.3f s)",
                frame.timestamp, self._buffer.last_timestamp,
            )
            return VitalsRecord.empty(frame.timestamp, signal_quality=self._extractor.last_quality)

        try:
            record = self._process(frame)
        except Exception:
            self._fault_count += 1
            logger.exception("Internal fault while processing frame at t=%.3f s", frame.timestamp)
            self._clear_transient()
            return VitalsRecord.empty(frame.timestamp)

        if self.tuner is not None and self._frame_count % self.config.tuning_interval == 0:
            self._apply_tuner(record)
        return record

    def set_calibration(self, profile: CalibrationProfile) -> None:
        """Install a calibration profile; fitted offsets are discarded."""
        self._calibration = CalibrationState(profile=profile)
        if self._running:
            self._calibration = self._bp.set_profile(profile)
        logger.info("Calibration profile set")

    def calibrate(self, systolic: float, diastolic: float) -> CalibrationState:
        """Fit blood-pressure offsets against a reference cuff reading."""
        estimator = self._bp if self._running else BloodPressureEstimator(
            self.config.blood_pressure, self._calibration
        )
        self._calibration = estimator.calibrate(systolic, diastolic)
        return self._calibration

    def update_sensitivity_settings(self, sensitivity: SensitivitySettings) -> None:
        """Apply new sensitivity multipliers without restarting."""
        self._base_sensitivity = sensitivity
        self._set_sensitivity(sensitivity)

    def update_settings(self, settings: ProcessingSettings) -> None:
        """Apply new processing thresholds without restarting."""
        self._settings = settings
        if self._running:
            self._extractor.update_settings(settings)
            self._peaks.update_settings(settings)
            self._spo2.update_settings(settings)
        logger.info("Processing settings updated")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def beats(self) -> Tuple[BeatEvent, ...]:
        """Recent beat events, oldest first."""
        return tuple(self._beats)

    @property
    def settings(self) -> ProcessingSettings:
        return self._settings

    @property
    def sensitivity(self) -> SensitivitySettings:
        return self._sensitivity

    @property
    def calibration(self) -> CalibrationState:
        return self._calibration

    @property
    def fault_count(self) -> int:
        return self._fault_count

    @property
    def frame_count(self) -> int:
        return self._frame_count

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _process(self, frame: FrameSample) -> VitalsRecord:
        ts = frame.timestamp
        reading = self._extractor.extract(frame)

        if not reading.finger_present:
            if self._finger_since is not None:
                logger.info("Finger removed at t=%.2f s", ts)
                self._clear_transient()
            return VitalsRecord.empty(ts, signal_quality=reading.quality)

        if self._finger_since is None:
            logger.info("Finger detected at t=%.2f s", ts)
            self._finger_since = ts
        settled = ts - self._finger_since - self._settings.finger_detection_delay_ms / 1000.0
        if settled < 0:
            return VitalsRecord.empty(ts, signal_quality=reading.quality, finger_present=True)
        progress = min(1.0, settled / self._settings.measurement_duration_s)

        filtered = self._filter.filter(reading.red)
        clean, motion = self._compensator.process(filtered, ts)
        self._buffer.append(ts, red=reading.red, ir=reading.proxy_ir, filtered=filtered, clean=clean)
        beat = self._peaks.process(clean, ts, suppressed=motion)
        if beat is not None:
            self._beats.append(beat)

        if motion and self._compensator.artifact_duration(ts) > self.config.artifact.max_artifact_s:
            logger.warning("Motion artifact longer than %.1f s; resetting beat history",
                           self.config.artifact.max_artifact_s)
            self._reset_downstream(since=ts)

        if len(self._buffer) < self._settings.min_frames_for_calculation:
            return VitalsRecord.empty(
                ts,
                signal_quality=reading.quality,
                finger_present=True,
                is_peak=beat is not None,
                motion_artifact=motion,
                measurement_progress=progress,
            )

        # Heart rate
        self._spectrum_countdown -= 1
        if self._spectrum_countdown <= 0:
            self._spectrum_countdown = self.config.spectrum.update_every
            times, values = self._buffer.window("clean", self.config.spectrum.window_s)
            # Samples from before a downstream reset belong to the artifact
            fresh = times >= self._spectrum_since
            self._freq_estimate = self._spectrum.estimate_per_minute(times[fresh], values[fresh])
        time_bpm, time_conf = self._peaks.estimate_bpm()
        bpm, confidence = self._fusion.update(time_bpm, time_conf, *self._freq_estimate, motion=motion)

        # SpO2
        _, red = self._buffer.window("red", self.config.spo2.window_s)
        _, ir = self._buffer.window("ir", self.config.spo2.window_s)
        spo2, spo2_confidence = self._spo2.update(red, ir)
        if self._spo2.low_perfusion:
            confidence = 0.0

        # Beat-driven estimators
        if beat is not None:
            times, waveform = self._buffer.window("filtered", self.config.blood_pressure.window_s)
            self._bp.estimate(times, waveform, self._beats, bpm)
            intervals = [b.interval for b in self._beats if b.interval is not None]
            self._rhythm = self._hrv.analyze(intervals)
        systolic, diastolic = self._bp.last
        hrv_metrics, has_arrhythmia, arrhythmia_type = self._rhythm

        times, red_trace = self._buffer.window("red")
        respiration, respiration_confidence = self._respiration.update(times, red_trace)

        return VitalsRecord(
            timestamp=ts,
            bpm=bpm,
            spo2=spo2,
            systolic=systolic,
            diastolic=diastolic,
            has_arrhythmia=has_arrhythmia,
            arrhythmia_type=arrhythmia_type,
            signal_quality=reading.quality,
            confidence=confidence,
            is_peak=beat is not None,
            hrv_metrics=hrv_metrics,
            finger_present=True,
            motion_artifact=motion,
            respiration_rate=respiration,
            respiration_confidence=respiration_confidence,
            spo2_confidence=spo2_confidence,
            perfusion_index=self._spo2.perfusion_index,
            measurement_progress=progress,
        )

    def _set_sensitivity(self, sensitivity: SensitivitySettings) -> None:
        self._sensitivity = sensitivity
        if self._running:
            self._filter.update_sensitivity(sensitivity)
            self._peaks.update_sensitivity(sensitivity)
            self._fusion.update_sensitivity(sensitivity)
        logger.info("Sensitivity settings updated: %s", sensitivity)

    def _apply_tuner(self, record: VitalsRecord) -> None:
        try:
            proposal = self.tuner.propose(record, self._sensitivity)
        except Exception:
            logger.exception("Settings tuner failed; keeping current sensitivity")
            return
        tuned = apply_bounded(self._sensitivity, proposal, self.config.max_tuning_step)
        if tuned != self._sensitivity:
            self._set_sensitivity(tuned)

    def _reset_downstream(self, since: float = float("-inf")) -> None:
        """
        Drop beat, rate and spectral state.  The spectrum ignores buffered
        samples older than *since* until the window refills.
        """
        self._compensator.reset()
        self._peaks.reset()
        self._fusion.reset()
        self._spectrum.reset()
        self._beats.clear()
        self._rhythm = (HRVMetrics(), False, ArrhythmiaType.NORMAL)
        self._spectrum_since = since
        self._spectrum_countdown = 0
        self._freq_estimate: Tuple[float, float] = (0.0, 0.0)

    def _clear_transient(self) -> None:
        """Zero all per-finger state; calibration and settings survive."""
        self._buffer.clear()
        self._filter.reset()
        self._spo2.reset()
        self._bp.reset()
        self._respiration.reset()
        self._reset_downstream()
        self._finger_since: Optional[float] = None

    def _release(self) -> None:
        self._buffer: Optional[SignalBuffer] = None
        self._extractor = None
        self._filter = None
        self._compensator = None
        self._peaks = None
        self._spectrum = None
        self._fusion = None
        self._spo2 = None
        self._bp = None
        self._hrv = None
        self._respiration = None
        self._beats: Deque[BeatEvent] = deque()
        self._frame_count = 0

"""
Unit tests for configuration, buffers and tuning.
Run with:  pytest tests/test_config.py
"""

from __future__ import annotations

import numpy as np
import pytest

from ppg_vitals.buffers import SignalBuffer
from ppg_vitals.config import (
    CalibrationProfile,
    FilterConfig,
    PipelineConfig,
    ProcessingSettings,
    SensitivitySettings,
)
from ppg_vitals.tuning import QualityTuner, apply_bounded
from ppg_vitals.types import VitalsRecord


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class TestProcessingSettings:

    def test_defaults_are_valid(self):
        s = ProcessingSettings()
        assert s.min_peak_distance_ms == 300.0
        assert s.peak_threshold_factor == 0.6
        assert s.min_frames_for_calculation == 30

    def test_out_of_range_raises(self):
        with pytest.raises(ValueError, match="min_peak_distance_ms"):
            ProcessingSettings(min_peak_distance_ms=100.0)
        with pytest.raises(ValueError, match="min_spo2"):
            ProcessingSettings(min_spo2=95.0)

    def test_with_updates_validates(self):
        s = ProcessingSettings()
        updated = s.with_updates(peak_threshold_factor=0.4)
        assert updated.peak_threshold_factor == 0.4
        assert s.peak_threshold_factor == 0.6      # original untouched
        with pytest.raises(ValueError):
            s.with_updates(peak_threshold_factor=0.9)

    def test_with_updates_rejects_unknown_field(self):
        with pytest.raises(ValueError, match="Unknown"):
            ProcessingSettings().with_updates(no_such_setting=1.0)

    def test_clamped_bounds_external_input(self):
        s = ProcessingSettings.clamped(min_spo2=95.0, min_red_value=5.0, bogus=3)
        assert s.min_spo2 == 90.0
        assert s.min_red_value == 10.0

    def test_frozen(self):
        s = ProcessingSettings()
        with pytest.raises(Exception):
            s.min_spo2 = 85.0


class TestSensitivitySettings:

    def test_defaults_are_neutral(self):
        s = SensitivitySettings()
        assert (s.signal_amplification, s.noise_reduction, s.peak_detection, s.response_time) == (1.0, 1.0, 1.0, 1.0)

    def test_bounds(self):
        with pytest.raises(ValueError):
            SensitivitySettings(signal_amplification=6.0)
        with pytest.raises(ValueError):
            SensitivitySettings(response_time=0.1)


class TestPipelineConfig:

    def test_filter_band_must_fit_below_nyquist(self):
        with pytest.raises(ValueError, match="Nyquist"):
            PipelineConfig(sample_rate=6.0)

    def test_filter_band_ordering(self):
        with pytest.raises(ValueError):
            FilterConfig(low_hz=4.0, high_hz=0.5)

    def test_calibration_profile_validation(self):
        with pytest.raises(ValueError):
            CalibrationProfile(reference_systolic=80.0, reference_diastolic=90.0)
        with pytest.raises(ValueError):
            CalibrationProfile(age=300)

    def test_bmi(self):
        profile = CalibrationProfile(height_cm=180.0, weight_kg=81.0)
        assert profile.bmi == pytest.approx(25.0)
        assert CalibrationProfile().bmi is None


# ---------------------------------------------------------------------------
# SignalBuffer
# ---------------------------------------------------------------------------

class TestSignalBuffer:

    def test_fifo_eviction(self):
        buf = SignalBuffer(capacity=4)
        for i in range(6):
            buf.append(float(i), red=float(i))
        ts, red = buf.window("red")
        assert len(buf) == 4
        np.testing.assert_array_equal(ts, [2.0, 3.0, 4.0, 5.0])
        np.testing.assert_array_equal(red, [2.0, 3.0, 4.0, 5.0])

    def test_decreasing_timestamp_rejected(self):
        buf = SignalBuffer(capacity=8)
        buf.append(1.0, red=1.0)
        buf.append(1.0, red=2.0)                  # equal is allowed
        with pytest.raises(ValueError):
            buf.append(0.5, red=3.0)
        assert len(buf) == 2

    def test_window_returns_copy(self):
        buf = SignalBuffer(capacity=8)
        for i in range(3):
            buf.append(float(i), clean=1.0)
        _, clean = buf.window("clean")
        clean[:] = 99.0
        _, again = buf.window("clean")
        np.testing.assert_array_equal(again, [1.0, 1.0, 1.0])

    def test_window_by_seconds(self):
        buf = SignalBuffer(capacity=64)
        for i in range(30):
            buf.append(i / 10.0, filtered=float(i))
        ts, _ = buf.window("filtered", seconds=1.0)
        assert 1.85 < ts[0] <= 2.0
        assert ts[-1] == pytest.approx(2.9)
        assert buf.span() == pytest.approx(2.9)

    def test_unknown_column(self):
        buf = SignalBuffer(capacity=4)
        with pytest.raises(ValueError):
            buf.append(0.0, green=1.0)

    def test_clear(self):
        buf = SignalBuffer(capacity=4)
        buf.append(0.0, red=1.0)
        buf.clear()
        assert len(buf) == 0
        assert buf.fill_ratio == 0.0
        assert buf.last_timestamp == float("-inf")


# ---------------------------------------------------------------------------
# Tuning
# ---------------------------------------------------------------------------

class TestTuning:

    def test_step_is_rate_limited(self):
        tuned = apply_bounded(SensitivitySettings(), {"signal_amplification": 3.0}, max_step=0.1)
        assert tuned.signal_amplification == pytest.approx(1.1)
        tuned = apply_bounded(SensitivitySettings(), {"noise_reduction": 0.2}, max_step=0.1)
        assert tuned.noise_reduction == pytest.approx(0.9)

    def test_result_is_clamped(self):
        current = SensitivitySettings(response_time=1.95)
        tuned = apply_bounded(current, {"response_time": 5.0}, max_step=0.1)
        assert tuned.response_time == 2.0

    def test_unknown_fields_ignored(self):
        current = SensitivitySettings()
        assert apply_bounded(current, {"gain": 2.0}, max_step=0.1) is current

    def test_quality_tuner_raises_noise_reduction_on_poor_signal(self):
        record = VitalsRecord(timestamp=1.0, finger_present=True, signal_quality=0.2)
        proposal = QualityTuner().propose(record, SensitivitySettings())
        assert proposal["noise_reduction"] > 1.0

    def test_quality_tuner_idle_without_finger(self):
        record = VitalsRecord.empty(1.0)
        assert QualityTuner().propose(record, SensitivitySettings()) == {}

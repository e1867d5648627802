"""
End-to-end tests for VitalsSession on synthetic fingertip video.
Run with:  pytest tests/test_pipeline.py
"""

from __future__ import annotations

import numpy as np
import pytest

from ppg_vitals.config import CalibrationProfile, PipelineConfig, SensitivitySettings
from ppg_vitals.pipeline import VitalsSession
from ppg_vitals.tuning import SettingsTuner
from ppg_vitals.types import FrameSample, VitalsRecord

FPS = 30.0


def _make_frame(r, g, b, timestamp, size=32, noise=0.0, rng=None) -> FrameSample:
    img = np.empty((size, size, 3), dtype=np.float64)
    img[:, :, 0] = b
    img[:, :, 1] = g
    img[:, :, 2] = r
    if noise:
        img += rng.normal(0, noise, img.shape)
    return FrameSample(np.clip(np.round(img), 0, 255).astype(np.uint8), timestamp)


def _finger_frames(freq_hz=1.2, seconds=10.0, noise=2.0, spike=None, burst=None, seed=0):
    """
    Covered-lens frames whose red channel pulses at *freq_hz*.

    *spike* is an optional ``(start, end)`` interval during which the red
    channel jumps by 50 levels, imitating a finger shift.  During the
    optional *burst* interval the pulse amplitude is five times larger,
    as when the finger presses and releases.
    """
    rng = np.random.default_rng(seed)
    for i in range(int(seconds * FPS)):
        t = i / FPS
        amplitude = 50.0 if burst is not None and burst[0] <= t <= burst[1] else 10.0
        red = 150.0 + amplitude * np.sin(2 * np.pi * freq_hz * t)
        if spike is not None and spike[0] <= t <= spike[1]:
            red += 50.0
        yield _make_frame(red, 60.0, 40.0, t, noise=noise, rng=rng)


def _run(session, frames):
    return [session.process_frame(f) for f in frames]


class _BoostNoiseReduction(SettingsTuner):
    def propose(self, record, current):
        return {"noise_reduction": 2.0}


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestSessionLifecycle:

    def test_requires_start(self):
        session = VitalsSession()
        with pytest.raises(RuntimeError):
            session.process_frame(_make_frame(0, 0, 0, 0.0))

    def test_context_manager(self):
        session = VitalsSession()
        with session:
            assert session.is_running
        assert not session.is_running
        with pytest.raises(RuntimeError):
            session.process_frame(_make_frame(0, 0, 0, 0.0))

    def test_restart_is_deterministic(self):
        frames = list(_finger_frames(seconds=8.0))
        session = VitalsSession()
        with session:
            first = _run(session, frames)
        with session:
            second = _run(session, frames)
        assert first == second
        assert any(r.has_reading for r in first)


# ---------------------------------------------------------------------------
# Finger gating
# ---------------------------------------------------------------------------

class TestFingerGating:

    def test_dark_frames_give_no_reading(self):
        with VitalsSession() as session:
            records = _run(session, (_make_frame(0, 0, 0, i / FPS) for i in range(60)))
        for r in records:
            assert r == VitalsRecord.empty(r.timestamp)
            assert not r.finger_present

    def test_detection_delay(self):
        with VitalsSession() as session:
            records = _run(session, _finger_frames(seconds=1.5))
        early = [r for r in records if r.timestamp < 0.9]
        assert all(r.finger_present and not r.has_reading for r in early)
        assert all(r.measurement_progress == 0.0 for r in early)

    def test_finger_removal_clears_state(self):
        with VitalsSession() as session:
            _run(session, _finger_frames(seconds=8.0))
            assert session.beats
            record = session.process_frame(_make_frame(0, 0, 0, 8.0))
            assert not record.finger_present
            assert record.bpm == 0.0
            assert session.beats == ()


# ---------------------------------------------------------------------------
# Vitals
# ---------------------------------------------------------------------------

class TestHeartRate:

    @pytest.mark.parametrize("freq_hz", [0.67, 0.75, 1.2, 2.0, 2.8, 3.0])
    def test_converges_to_pulse_rate(self, freq_hz):
        with VitalsSession() as session:
            records = _run(session, _finger_frames(freq_hz=freq_hz, seconds=20.0))
        expected = 60.0 * freq_hz
        bpm = records[-1].bpm
        assert abs(bpm - expected) < 5.0, f"Expected ~{expected:.0f} BPM, got {bpm:.1f}"
        assert records[-1].confidence > 0.0

    @pytest.mark.parametrize("disturbance", ["spike", "burst"])
    def test_short_artifact_is_suppressed(self, disturbance):
        window = (5.6, 6.1)
        frames = _finger_frames(freq_hz=1.0, seconds=10.0, **{disturbance: window})
        with VitalsSession() as session:
            records = _run(session, frames)
            beat_times = [b.timestamp for b in session.beats]

        assert any(r.motion_artifact for r in records if window[0] <= r.timestamp <= window[1] + 0.5)
        assert not [t for t in beat_times if window[0] <= t <= window[1]]

        before = [r.bpm for r in records if r.timestamp < window[0] and r.bpm > 0]
        assert before, f"Expected a reading before the {disturbance}"
        pre, end = before[-1], records[-1].bpm
        assert abs(end - pre) / pre < 0.1, f"BPM moved from {pre:.1f} to {end:.1f}"

    def test_long_artifact_restarts_rate_estimation(self):
        # 60 BPM, a 3 s pressure burst, then 75 BPM
        def frames():
            rng = np.random.default_rng(0)
            for i in range(int(20 * FPS)):
                t = i / FPS
                if t < 6.0:
                    red = 150.0 + 10.0 * np.sin(2 * np.pi * 1.0 * t)
                elif t < 9.0:
                    red = 150.0 + 50.0 * np.sin(2 * np.pi * 1.0 * t)
                else:
                    red = 150.0 + 10.0 * np.sin(2 * np.pi * 1.25 * t)
                yield _make_frame(red, 60.0, 40.0, t, noise=2.0, rng=rng)

        with VitalsSession() as session:
            records = _run(session, frames())

        assert any(r.motion_artifact for r in records if 6.0 <= r.timestamp < 9.0)
        pre = [r.bpm for r in records if r.timestamp < 6.0 and r.bpm > 0]
        assert pre, "Expected a reading before the artifact"

        after = [r for r in records if r.timestamp >= 6.0]
        dropped = [r for r in after if r.finger_present and r.bpm == 0.0]
        assert dropped, "Rate state should be cleared once the artifact outlasts the limit"

        resumed = [r.bpm for r in after if r.timestamp > dropped[-1].timestamp and r.bpm > 0]
        assert resumed, "Expected readings to resume after the artifact"
        assert resumed[0] > 67.5, f"First reading {resumed[0]:.1f} still reflects the old rate"
        assert abs(records[-1].bpm - 75.0) < 5.0, f"Expected ~75 BPM, got {records[-1].bpm:.1f}"

    def test_record_invariants(self):
        with VitalsSession() as session:
            records = _run(session, _finger_frames(freq_hz=1.2, seconds=20.0))
        for r in records:
            assert r.spo2 == 0.0 or 70.0 <= r.spo2 <= 100.0
            if r.systolic or r.diastolic:
                assert r.systolic > r.diastolic
            assert 0.0 <= r.confidence <= 1.0
            assert 0.0 <= r.spo2_confidence <= 1.0
            assert 0.0 <= r.respiration_confidence <= 1.0
            assert 0.0 <= r.signal_quality <= 1.0
            assert 0.0 <= r.measurement_progress <= 1.0
            if r.respiration_rate == 0.0:
                assert r.respiration_confidence == 0.0

    def test_low_perfusion_zeroes_confidence(self):
        # A handful of ROI pixels toggling by one level: pulsatile but far
        # below the perfusion floor
        def frames():
            for i in range(int(15 * FPS)):
                t = i / FPS
                img = np.empty((32, 32, 3), dtype=np.uint8)
                img[:, :, 0] = 40
                img[:, :, 1] = 60
                img[:, :, 2] = 150
                lit = int(round(2.0 + 2.0 * np.sin(2 * np.pi * 1.2 * t)))
                img[11, 11:11 + lit, 2] = 151
                yield FrameSample(img, t)

        with VitalsSession() as session:
            records = _run(session, frames())

        measured = [r for r in records if r.finger_present and r.measurement_progress > 0]
        assert measured
        for r in measured:
            assert r.confidence == 0.0, f"confidence {r.confidence} at t={r.timestamp:.2f}"
            assert r.spo2_confidence == 0.0
            assert r.perfusion_index < 0.05


class TestSpO2Pipeline:

    def test_ratio_of_ratios_end_to_end(self):
        def frames():
            for i in range(int(8 * FPS)):
                t = i / FPS
                pulse = np.sin(2 * np.pi * 1.2 * t)
                yield _make_frame(180.0 + 3.0 * pulse, 60.0 + 2.0 * pulse, 50.0, t)

        with VitalsSession() as session:
            records = _run(session, frames())
        # proxy IR = 0.8·green + 0.2·blue = 58 + 1.6·pulse
        expected = 110 - 25 * (3.0 / 180.0) / (1.6 / 58.0)
        assert records[-1].spo2 == pytest.approx(expected, abs=2.0)
        assert records[-1].perfusion_index > 0.0
        assert records[-1].spo2_confidence > 0.5


class TestRespirationPipeline:

    def test_breathing_modulation_reported_with_confidence(self):
        def frames():
            rng = np.random.default_rng(1)
            for i in range(int(20 * FPS)):
                t = i / FPS
                red = 150.0 + 10.0 * np.sin(2 * np.pi * 1.2 * t) + 4.0 * np.sin(2 * np.pi * 0.25 * t)
                yield _make_frame(red, 60.0, 40.0, t, noise=1.0, rng=rng)

        with VitalsSession() as session:
            records = _run(session, frames())
        last = records[-1]
        assert abs(last.respiration_rate - 15.0) < 3.0, f"got {last.respiration_rate:.1f}/min"
        assert 0.0 < last.respiration_confidence <= 1.0


# ---------------------------------------------------------------------------
# Settings and calibration
# ---------------------------------------------------------------------------

class TestSessionControl:

    def test_calibrate_before_start(self):
        session = VitalsSession()
        state = session.calibrate(118.0, 76.0)
        assert state.calibrated
        assert state.systolic_offset == pytest.approx(-2.0)
        assert state.diastolic_offset == pytest.approx(-4.0)
        with session:
            assert session.calibration.calibrated

    def test_invalid_calibration_rejected(self):
        session = VitalsSession()
        with pytest.raises(ValueError):
            session.calibrate(70.0, 90.0)

    def test_set_calibration_while_running(self):
        with VitalsSession() as session:
            session.set_calibration(CalibrationProfile(age=55, height_cm=175.0, weight_kg=80.0))
            assert session.calibration.profile.age == 55
            assert not session.calibration.calibrated

    def test_update_sensitivity_while_running(self):
        tuned = SensitivitySettings(signal_amplification=2.0)
        with VitalsSession() as session:
            _run(session, _finger_frames(seconds=3.0))
            session.update_sensitivity_settings(tuned)
            assert session.sensitivity == tuned
            _run(session, _finger_frames(seconds=1.0))
        session.start()
        assert session.sensitivity == tuned
        session.stop()

    def test_tuner_steps_are_bounded(self):
        config = PipelineConfig()
        with VitalsSession(config, tuner=_BoostNoiseReduction()) as session:
            _run(session, (_make_frame(0, 0, 0, i / FPS) for i in range(config.tuning_interval)))
            assert session.sensitivity.noise_reduction == pytest.approx(1.0 + config.max_tuning_step)
        session.start()
        assert session.sensitivity.noise_reduction == 1.0
        session.stop()


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

class TestErrorHandling:

    def test_out_of_order_frame_dropped(self):
        with VitalsSession() as session:
            _run(session, _finger_frames(seconds=3.0))
            record = session.process_frame(_make_frame(160, 60, 40, 1.0))
            assert record.timestamp == 1.0
            assert not record.has_reading
            assert session.fault_count == 0

    def test_internal_fault_is_contained(self, monkeypatch):
        with VitalsSession() as session:
            frames = list(_finger_frames(seconds=3.0))
            _run(session, frames[:-1])

            def boom(*_args, **_kwargs):
                raise FloatingPointError("synthetic")

            monkeypatch.setattr(session._peaks, "process", boom)
            record = session.process_frame(frames[-1])
            assert record == VitalsRecord.empty(frames[-1].timestamp)
            assert session.fault_count == 1
            assert session.beats == ()

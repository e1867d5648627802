"""
Unit tests for the per-sample signal chain: extractor, filter, motion
compensator, beat detector and frequency estimator.
Run with:  pytest tests/test_signal_chain.py
"""

from __future__ import annotations

import numpy as np
import pytest

from ppg_vitals.artifacts import MotionCompensator, wavelet_denoise
from ppg_vitals.config import ArtifactConfig, ProcessingSettings
from ppg_vitals.extractor import ChannelExtractor
from ppg_vitals.filters import AdaptiveThreshold, KalmanSmoother, SignalFilter
from ppg_vitals.peaks import PeakDetector, PeakState
from ppg_vitals.spectrum import FrequencyEstimator
from ppg_vitals.types import FrameSample

FPS = 30.0


def _make_frame(r, g, b, size=32, noise=0.0, rng=None, timestamp=0.0) -> FrameSample:
    img = np.empty((size, size, 3), dtype=np.float64)
    img[:, :, 0] = b
    img[:, :, 1] = g
    img[:, :, 2] = r
    if noise:
        rng = rng or np.random.default_rng(0)
        img += rng.normal(0, noise, img.shape)
    return FrameSample(np.clip(np.round(img), 0, 255).astype(np.uint8), timestamp)


def _sine(freq_hz, seconds, amplitude=1.0, fps=FPS):
    t = np.arange(int(seconds * fps)) / fps
    return t, amplitude * np.sin(2 * np.pi * freq_hz * t)


# ---------------------------------------------------------------------------
# FrameSample / ChannelExtractor
# ---------------------------------------------------------------------------

class TestFrameSample:

    def test_rejects_wrong_shape(self):
        with pytest.raises(ValueError):
            FrameSample(np.zeros((8, 8), dtype=np.uint8), 0.0)

    def test_rejects_wrong_dtype(self):
        with pytest.raises(ValueError):
            FrameSample(np.zeros((8, 8, 3), dtype=np.float32), 0.0)


class TestChannelExtractor:

    def test_all_zero_frame(self):
        reading = ChannelExtractor().extract(_make_frame(0, 0, 0))
        assert reading.red == 0.0
        assert reading.proxy_ir == 0.0
        assert reading.quality == 0.0
        assert not reading.finger_present

    def test_finger_frame(self):
        reading = ChannelExtractor().extract(_make_frame(150, 60, 40, noise=1.0))
        assert reading.finger_present
        assert reading.red == pytest.approx(150, abs=1.0)
        assert reading.proxy_ir == pytest.approx(0.8 * 60 + 0.2 * 40, abs=1.0)
        assert reading.quality > 0.8
        assert reading.valid_ratio == pytest.approx(1.0)

    def test_grey_scene_is_not_a_finger(self):
        """Red does not dominate green / blue: no skin pixels."""
        reading = ChannelExtractor().extract(_make_frame(120, 120, 120))
        assert not reading.finger_present
        assert reading.quality == 0.0

    def test_saturated_red_rejected(self):
        reading = ChannelExtractor().extract(_make_frame(255, 40, 40))
        assert not reading.finger_present

    def test_dim_finger_below_brightness(self):
        settings = ProcessingSettings(min_red_value=10.0, min_brightness=80.0)
        reading = ChannelExtractor(settings).extract(_make_frame(60, 20, 20))
        assert reading.quality > 0.5
        assert not reading.finger_present

    def test_partial_coverage_lowers_quality(self):
        frame = _make_frame(150, 60, 40)
        half = frame.image.copy()
        half[:, : half.shape[1] // 2 + 1] = (100, 100, 100)     # left half grey
        full_q = ChannelExtractor().extract(frame).quality
        half_q = ChannelExtractor().extract(FrameSample(half, 0.0)).quality
        assert half_q < full_q

    def test_noisy_roi_lowers_quality(self):
        clean = ChannelExtractor().extract(_make_frame(150, 40, 30, noise=1.0))
        noisy = ChannelExtractor().extract(_make_frame(150, 40, 30, noise=40.0))
        assert noisy.quality < clean.quality


# ---------------------------------------------------------------------------
# Filter chain
# ---------------------------------------------------------------------------

class TestAdaptiveThreshold:

    def test_moves_toward_target_and_clamps(self):
        th = AdaptiveThreshold(initial=1.0, low=0.0, high=2.0, rate=0.5)
        assert th.update(3.0) == pytest.approx(2.0)      # 1 + 0.5·2 = 2, at the bound
        assert th.update(0.0, confidence=0.5) == pytest.approx(1.5)
        th.reset()
        assert th.value == 1.0


class TestKalmanSmoother:

    def test_converges_on_constant(self):
        k = KalmanSmoother(q=0.15, r=0.8)
        out = [k.update(5.0) for _ in range(20)]
        assert out[-1] == pytest.approx(5.0)


class TestSignalFilter:

    def test_constant_input_settles_to_zero(self):
        f = SignalFilter(FPS)
        out = [f.filter(150.0) for _ in range(60)]
        assert abs(out[-1]) < 1e-6

    def test_in_band_sine_passes(self):
        f = SignalFilter(FPS)
        _, x = _sine(1.2, 10.0, amplitude=10.0)
        out = np.array([f.filter(150.0 + v) for v in x])
        assert np.max(np.abs(out[-60:])) > 5.0

    def test_out_of_band_drift_rejected(self):
        f = SignalFilter(FPS)
        _, x = _sine(0.05, 40.0, amplitude=20.0)
        out = np.array([f.filter(150.0 + v) for v in x])
        assert np.max(np.abs(out[-300:])) < 2.0

    def test_outlier_clamped(self):
        f = SignalFilter(FPS)
        rng = np.random.default_rng(1)
        for v in 150.0 + rng.normal(0, 1.0, 60):
            f.filter(v)
        f.filter(400.0)
        assert f.clamped_count >= 1

    def test_reset_zeroes_state(self):
        f = SignalFilter(FPS)
        _, x = _sine(1.0, 3.0, amplitude=10.0)
        first = [f.filter(150.0 + v) for v in x]
        f.reset()
        assert f.clamped_count == 0
        second = [f.filter(150.0 + v) for v in x]
        np.testing.assert_allclose(first, second)


# ---------------------------------------------------------------------------
# Motion compensation
# ---------------------------------------------------------------------------

class TestMotionCompensator:

    def test_clean_sine_not_flagged(self):
        mc = MotionCompensator(FPS)
        t, x = _sine(1.2, 10.0, amplitude=5.0)
        flags = [mc.process(v, ts)[1] for v, ts in zip(x, t)]
        assert not any(flags)

    def test_spike_flagged_and_suppressed(self):
        mc = MotionCompensator(FPS)
        t, x = _sine(1.0, 10.0, amplitude=5.0)
        x = x.copy()
        x[150:165] += 50.0
        results = [mc.process(v, ts) for v, ts in zip(x, t)]
        flagged = [i for i, (_, flag) in enumerate(results) if flag]
        assert flagged, "spike was not flagged"
        assert 150 <= flagged[0] <= 153
        assert all(results[i][0] == 0.0 for i in flagged)

    def test_subtract_mode_clips_to_envelope(self):
        mc = MotionCompensator(FPS, ArtifactConfig(mode="subtract"))
        t, x = _sine(1.0, 10.0, amplitude=5.0)
        x = x.copy()
        x[150:165] += 50.0
        results = [mc.process(v, ts) for v, ts in zip(x, t)]
        spike_out = [results[i][0] for i in range(150, 165) if results[i][1]]
        assert spike_out
        assert max(spike_out) < 20.0

    def test_artifact_duration(self):
        mc = MotionCompensator(FPS)
        t, x = _sine(1.0, 5.0, amplitude=5.0)
        for v, ts in zip(x, t):
            mc.process(v, ts)
        assert mc.artifact_duration(t[-1]) == 0.0
        for i in range(30):
            mc.process(100.0 * (-1) ** i, 5.0 + i / FPS)
        assert mc.flagged
        assert mc.artifact_duration(5.0 + 29 / FPS) > 0.5

    def test_wavelet_denoise_reduces_noise(self):
        rng = np.random.default_rng(2)
        _, clean = _sine(0.5, 6.0, amplitude=1.0)
        noisy = clean + rng.normal(0, 0.3, clean.size)
        denoised = wavelet_denoise(noisy)
        assert denoised.shape == noisy.shape
        assert np.std(denoised - clean) < np.std(noisy - clean)


# ---------------------------------------------------------------------------
# Beat detection
# ---------------------------------------------------------------------------

class TestPeakDetector:

    def _run(self, detector, t, x, suppressed=None):
        beats = []
        for i, (ts, v) in enumerate(zip(t, x)):
            flag = bool(suppressed[i]) if suppressed is not None else False
            beat = detector.process(float(v), float(ts), suppressed=flag)
            if beat is not None:
                beats.append(beat)
        return beats

    def test_sine_beats_and_bpm(self):
        det = PeakDetector(FPS)
        t, x = _sine(1.2, 10.0)
        beats = self._run(det, t, x)
        assert len(beats) >= 9
        intervals = np.diff([b.timestamp for b in beats])
        assert np.all(np.abs(intervals - 1 / 1.2) < 0.05)
        bpm, conf = det.estimate_bpm()
        assert abs(bpm - 72.0) < 3.0, f"Expected ~72 BPM, got {bpm:.1f}"
        assert conf > 0.5

    def test_beat_at_sine_peak(self):
        det = PeakDetector(FPS)
        t, x = _sine(1.0, 5.0)
        beats = self._run(det, t, x)
        for b in beats:
            # peaks of sin(2πt) are at t = 0.25 + k
            assert abs((b.timestamp - 0.25) % 1.0) < 0.05 or abs((b.timestamp - 0.25) % 1.0 - 1.0) < 0.05
            assert 0.0 < b.quality <= 1.0

    def test_first_beat_has_no_interval(self):
        det = PeakDetector(FPS)
        t, x = _sine(1.0, 5.0)
        beats = self._run(det, t, x)
        assert beats[0].interval is None
        assert beats[1].interval == pytest.approx(1.0, abs=0.05)

    def test_suppressed_samples_never_emit(self):
        det = PeakDetector(FPS)
        t, x = _sine(1.0, 5.0)
        beats = self._run(det, t, x, suppressed=np.ones(t.size, dtype=bool))
        assert beats == []
        assert det.state is PeakState.IDLE

    def test_absence_resets_history(self):
        det = PeakDetector(FPS)
        t, x = _sine(1.0, 5.0)
        self._run(det, t, x)
        assert det.intervals
        t_flat = t[-1] + np.arange(1, 91) / FPS
        self._run(det, t_flat, np.zeros(t_flat.size))
        assert det.intervals == []
        assert det.estimate_bpm() == (0.0, 0.0)

    def test_secondary_bump_not_counted(self):
        """A secondary bump half-way between beats is not a beat."""
        det = PeakDetector(FPS)
        t, x = _sine(1.0, 10.0)
        bump = 0.9 * np.exp(-((t % 1.0 - 0.75) ** 2) / (2 * 0.05 ** 2))
        beats = self._run(det, t, x + bump * (t > 5.0))
        intervals = [b.interval for b in beats if b.interval is not None]
        assert all(abs(i - 1.0) < 0.1 for i in intervals)

    def test_stricter_sensitivity_raises_threshold(self):
        t, x = _sine(1.0, 6.0)
        lax = PeakDetector(FPS, ProcessingSettings(peak_threshold_factor=0.2))
        strict = PeakDetector(FPS, ProcessingSettings(peak_threshold_factor=0.8))
        self._run(lax, t, x)
        self._run(strict, t, x)
        assert strict.threshold > lax.threshold


# ---------------------------------------------------------------------------
# Frequency estimator
# ---------------------------------------------------------------------------

class TestFrequencyEstimator:

    def test_short_window_returns_zero(self):
        t, x = _sine(1.2, 3.0)
        assert FrequencyEstimator().estimate(t, x) == (0.0, 0.0)

    def test_flat_signal_returns_zero(self):
        t = np.arange(300) / FPS
        assert FrequencyEstimator().estimate(t, np.full(t.size, 4.0)) == (0.0, 0.0)

    @pytest.mark.parametrize("freq", [0.8, 1.5, 2.5])
    def test_sine_frequency(self, freq):
        t, x = _sine(freq, 10.0)
        bpm, conf = FrequencyEstimator().estimate_per_minute(t, x)
        assert abs(bpm - 60 * freq) < 1.5, f"Expected ~{60 * freq} BPM, got {bpm:.1f}"
        assert conf > 0.5

    def test_jittered_timestamps(self):
        rng = np.random.default_rng(3)
        t = np.cumsum(rng.uniform(0.025, 0.042, 300))
        x = np.sin(2 * np.pi * 1.3 * t)
        freq, _ = FrequencyEstimator().estimate(t, x)
        assert freq == pytest.approx(1.3, abs=0.03)

    def test_mismatched_lengths(self):
        with pytest.raises(ValueError):
            FrequencyEstimator().estimate(np.arange(10.0), np.arange(9.0))

from __future__ import annotations

import numpy as np

from vitalsense.config import VoiceConfig
from vitalsense.models import VoiceFrame
from vitalsense.voice import (
    AudioBuffer,
    VoiceAnalyzer,
    VoiceBiomarkerEngine,
    autocorrelation,
    breathing,
    estimate_f0,
    first_dominant_peak,
    hnr,
    jitter,
    magnitude_spectrum,
    mel_filterbank,
    mfcc,
    shimmer,
    spectral_centroid,
    spectral_flux,
)

SR = 16000


def _tone(freq: float = 150.0, amp: float = 0.5, seconds: float = 1.0, sr: int = SR) -> np.ndarray:
    t = np.arange(int(sr * seconds)) / sr
    return amp * np.sin(2 * np.pi * freq * t)


def test_autocorrelation_peaks_at_zero_lag() -> None:
    acf = autocorrelation(_tone(seconds=0.1))
    assert int(np.argmax(acf)) == 0
    assert np.isclose(acf[0], 0.125, rtol=1e-6)


def test_f0_of_pure_tone() -> None:
    f0, conf = estimate_f0(_tone(150.0), SR)
    assert f0 is not None
    assert abs(f0 - 150.0) < 5.0
    assert conf > 0.3
    assert estimate_f0(np.zeros(4), SR) == (None, 0.0)


def test_f0_across_pitches_and_sample_rates() -> None:
    for sr in (8000, 16000, 44100):
        for freq in (80.0, 120.0, 150.0, 200.0, 320.0):
            f0, conf = estimate_f0(_tone(freq, sr=sr), sr)
            assert f0 is not None, (sr, freq)
            assert abs(f0 - freq) < 5.0, (sr, freq, f0)
            assert conf > 0.3


def test_f0_ignores_period_multiples_with_harmonics() -> None:
    sr = 16000
    t = np.arange(sr) / sr
    x = 0.4 * np.sin(2 * np.pi * 110.0 * t) + 0.3 * np.sin(2 * np.pi * 220.0 * t) + 0.1 * np.sin(2 * np.pi * 330.0 * t)
    f0, _ = estimate_f0(x, sr)
    assert f0 is not None and abs(f0 - 110.0) < 5.0


def test_first_dominant_peak_prefers_earliest_strong_maximum() -> None:
    roi = np.array([5.0, 1.0, 8.0, 2.0, 9.0, 3.0, 10.0, 4.0])
    assert first_dominant_peak(roi) == 2
    # 8 is below 0.9 of the maximum, so the next one wins
    assert first_dominant_peak(roi, fraction=0.9) == 4
    # Monotonic ROI has no interior maximum
    assert first_dominant_peak(np.arange(6.0)) == 5


def test_voice_quality_of_pure_tone() -> None:
    x = _tone(150.0)
    j = jitter(x, SR, 150.0)
    assert j is not None and j < 1.5
    s = shimmer(x, SR)
    assert s is not None and s < 5.0
    h = hnr(x, SR, 150.0)
    assert h is not None and h > 15.0
    assert jitter(x, SR, None) is None
    # Period longer than a third of the segment
    assert jitter(x[:200], SR, 150.0) is None


def test_hnr_drops_with_noise() -> None:
    rng = np.random.default_rng(4)
    clean = hnr(_tone(200.0), SR, 200.0)
    noisy = hnr(_tone(200.0) + 0.3 * rng.standard_normal(SR), SR, 200.0)
    assert clean is not None and noisy is not None
    assert noisy < clean
    assert noisy < 10.0


def test_spectral_features() -> None:
    freqs, mag = magnitude_spectrum(_tone(1000.0), SR)
    c = spectral_centroid(freqs, mag)
    assert c is not None and abs(c - 1000.0) < 20.0
    assert spectral_flux(mag, None) == 0.0
    assert spectral_flux(mag, mag) == 0.0
    assert spectral_flux(mag, np.zeros_like(mag)) > 0.0

    fb = mel_filterbank(26, freqs, SR)
    assert fb.shape == (26, freqs.size)
    assert np.all(fb >= 0.0)
    coeffs = mfcc(freqs, mag, SR, n_filters=26, keep=5)
    assert coeffs is not None and len(coeffs) == 5
    assert mfcc(freqs, np.zeros_like(mag), SR) is None


def test_breathing_from_slow_envelope() -> None:
    sr = 8000
    t = np.arange(20 * sr) / sr
    env = 0.5 * (1.0 - np.cos(2 * np.pi * 0.25 * t))  # 15 breaths per minute
    x = env * np.sin(2 * np.pi * 200.0 * t)
    rate, pattern = breathing(x, sr, VoiceConfig())
    assert rate is not None
    assert 12.0 <= rate <= 18.0
    assert pattern == "regular"


def test_breathing_needs_envelope_modulation() -> None:
    assert breathing(_tone(150.0, seconds=3.0), SR, VoiceConfig()) == (None, None)
    # Slight amplitude ripple is still steady phonation
    t = np.arange(3 * SR) / SR
    ripple = (1.0 + 0.05 * np.sin(2 * np.pi * 3.0 * t)) * _tone(150.0, seconds=3.0)
    assert breathing(ripple, SR, VoiceConfig()) == (None, None)


def test_audio_buffer_keeps_last_seconds_and_schedules() -> None:
    cfg = VoiceConfig(buffer_seconds=2.0, min_seconds=1.0, analysis_interval=2.0)
    buf = AudioBuffer(1000, cfg)
    assert not buf.due(0.0)
    for i in range(5):
        buf.append(np.full(700, float(i)))
    assert len(buf) == 2000
    assert buf.latest(0.5).size == 500
    assert buf.latest(2.0)[0] == 2.0
    assert buf.due(10.0)
    buf.mark(10.0)
    assert not buf.due(11.0)
    assert buf.due(12.0)
    buf.clear()
    assert len(buf) == 0


def test_analyzer_reports_tone_and_empties_on_silence() -> None:
    an = VoiceAnalyzer()
    res = an.analyze(_tone(150.0), SR)
    assert res.f0 is not None and abs(res.f0 - 150.0) < 5.0
    assert res.hnr is not None and res.hnr > 15.0
    assert res.mfcc is not None and len(res.mfcc) == 5
    assert 0.0 <= res.vocal_stress <= 100.0
    assert 0.0 <= res.valence <= 100.0
    assert 0.0 <= res.arousal <= 100.0
    assert res.voiced_frame_ratio == 100.0

    assert an.analyze(np.zeros(SR), SR).is_empty()
    noise = np.random.default_rng(1).standard_normal(SR) * 0.1
    assert an.analyze(noise, SR).is_empty()


def test_analyzer_keeps_octave_at_low_sample_rate() -> None:
    an = VoiceAnalyzer()
    res = an.analyze(_tone(120.0, sr=8000), 8000)
    assert res.f0 is not None and abs(res.f0 - 120.0) < 5.0
    assert res.jitter is not None and res.jitter < 1.5
    assert res.breathing_rate is None


def test_engine_analyzes_on_cadence() -> None:
    eng = VoiceBiomarkerEngine(VoiceConfig(min_seconds=1.0, analysis_interval=2.0))
    block = _tone(150.0, seconds=0.1)
    updates = []
    for i in range(40):
        u = eng.push(VoiceFrame(samples=block, sample_rate=SR, timestamp=i * 0.1))
        if u is not None:
            updates.append((i, u))
    # First once a second is buffered, then every two seconds
    assert [i for i, _ in updates] == [9, 29]
    assert all(u.has_voice for _, u in updates)
    assert eng.latest.f0 is not None
    assert eng.levels is not None and eng.levels.grade in {"good", "excellent"}


def test_engine_resets_on_sample_rate_change() -> None:
    eng = VoiceBiomarkerEngine()
    eng.push(VoiceFrame(samples=_tone(seconds=0.5), sample_rate=SR, timestamp=0.0))
    assert eng.buffer is not None and len(eng.buffer) == SR // 2
    eng.push(VoiceFrame(samples=_tone(seconds=0.5, sr=8000), sample_rate=8000, timestamp=0.5))
    assert eng.buffer.sample_rate == 8000
    assert len(eng.buffer) == 4000

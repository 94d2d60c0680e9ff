from __future__ import annotations

import numpy as np

from vitalsense.quality import band_snr, harmonic_confidence, harmonic_ratio


def test_band_snr_peak_higher_than_noise() -> None:
    # Construct a spectrum with a clear peak at index 10
    p = np.ones(64, dtype=np.float32)
    p[10] = 50.0
    band = np.zeros(64, dtype=bool)
    band[5:30] = True
    s = band_snr(p, peak_index=10, band=band, guard_bins=1)
    assert np.isclose(s, 50.0)
    # Flat spectrum has unit SNR
    assert np.isclose(band_snr(np.ones(64), 10, band), 1.0)


def test_harmonic_ratio_and_confidence() -> None:
    freqs = np.linspace(0, 15, 301)
    p = np.full(freqs.size, 1e-3)
    p[np.argmin(np.abs(freqs - 1.2))] = 10.0
    p[np.argmin(np.abs(freqs - 2.4))] = 3.0
    ratio = harmonic_ratio(p, freqs, 1.2)
    assert ratio is not None and np.isclose(ratio, 0.3)
    assert harmonic_confidence(ratio) == 1.0
    # Harmonic beyond the spectrum
    assert harmonic_ratio(p, freqs, 9.0) is None
    assert harmonic_confidence(None) == 0.0
    assert 0.0 < harmonic_confidence(0.05) < 1.0
    assert harmonic_confidence(1.0) == 0.0

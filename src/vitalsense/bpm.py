"""Heart-rate estimation from the band-limited rPPG spectrum."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .config import AnalyzerConfig
from .models import AnalysisReason, FrequencyPeak, HeartRateEstimate
from .quality import band_snr, harmonic_confidence, harmonic_ratio

logger = logging.getLogger(__name__)


def power_spectrum(x: np.ndarray, fs: float, n_fft: int = 0) -> Tuple[np.ndarray, np.ndarray]:
    """Return (freqs, power) of a real signal, zero-padded to ``n_fft`` points."""
    x = np.asarray(x, dtype=np.float64)
    n = max(int(n_fft), x.size)
    X = np.fft.rfft(x, n=n)
    freqs = np.fft.rfftfreq(n, d=1.0 / fs)
    return freqs, np.abs(X) ** 2


def interpolate_peak(p: np.ndarray, idx: int) -> float:
    """Parabolic sub-bin offset of a spectral peak, in bins (-0.5..0.5)."""
    if idx <= 0 or idx >= p.size - 1:
        return 0.0
    a, b, c = float(p[idx - 1]), float(p[idx]), float(p[idx + 1])
    den = a - 2.0 * b + c
    if den >= 0:
        return 0.0
    return float(np.clip(0.5 * (a - c) / den, -0.5, 0.5))


@dataclass
class AnalysisResult:
    estimate: Optional[HeartRateEstimate]
    peak: Optional[FrequencyPeak]
    reason: AnalysisReason


class FrequencyAnalyzer:
    """FFT peak search with SNR gating, harmonic check and range validation."""

    def __init__(self, cfg: Optional[AnalyzerConfig] = None) -> None:
        self.cfg = cfg or AnalyzerConfig()

    def analyze(
        self,
        signal: Optional[np.ndarray],
        fs: float,
        quality: float = 1.0,
        timestamp: float = 0.0,
    ) -> AnalysisResult:
        cfg = self.cfg
        if signal is None or np.asarray(signal).size < cfg.min_length or fs <= 0:
            return AnalysisResult(None, None, AnalysisReason.INSUFFICIENT_DATA)
        x = np.asarray(signal, dtype=np.float64)
        fmax = min(cfg.fmax_hz, 0.5 * fs)
        freqs, p = power_spectrum(x - x.mean(), fs, cfg.n_fft)
        band = (freqs >= cfg.fmin_hz) & (freqs <= fmax)
        if not np.any(band):
            return AnalysisResult(None, None, AnalysisReason.INSUFFICIENT_DATA)
        idx = int(np.argmax(np.where(band, p, -1.0)))
        # Half a native bin on each side belongs to the main lobe
        guard = max(1, int(round(0.5 * p.size / max(1, x.size // 2 + 1))))
        snr = band_snr(p, idx, band, guard_bins=guard)
        df = float(freqs[1] - freqs[0])
        f_peak = float(freqs[idx]) + interpolate_peak(p, idx) * df
        hc = harmonic_confidence(
            harmonic_ratio(p, freqs, f_peak, tolerance_hz=max(df, 0.05)),
            cfg.harmonic_min,
            cfg.harmonic_max,
        )
        peak = FrequencyPeak(
            frequency_hz=f_peak,
            power=float(p[idx]),
            snr=float(snr),
            harmonic_confidence=hc,
        )
        if snr < cfg.min_snr:
            return AnalysisResult(None, peak, AnalysisReason.LOW_SNR)
        bpm = int(round(60.0 * f_peak))
        if bpm < cfg.bpm_min or bpm > cfg.bpm_max:
            logger.debug("Discarding out-of-range estimate %d BPM", bpm)
            return AnalysisResult(None, peak, AnalysisReason.OUT_OF_RANGE)
        q = float(np.clip(quality, 0.0, 1.0)) * (0.5 + 0.5 * hc)
        return AnalysisResult(HeartRateEstimate(bpm, q, float(timestamp)), peak, AnalysisReason.OK)

"""Respiration rate (RR) estimation from the raw rPPG buffer.

Respiration modulates the green-channel baseline; the buffer is band-limited
to the breathing band and breaths are counted as peaks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.signal import butter, detrend, find_peaks, sosfiltfilt

from .config import RespirationConfig


@dataclass
class RrResult:
    brpm: float | None  # breaths per minute
    signal: np.ndarray  # band-limited breathing waveform
    peaks: np.ndarray  # peak indices into ``signal``


def estimate_respiratory_rate(
    raw: np.ndarray,
    fs: float,
    cfg: Optional[RespirationConfig] = None,
) -> RrResult:
    """Estimate respiration rate by peak counting in the breathing band.

    Args:
        raw: raw green-channel buffer (1D float array).
        fs: sampling rate (Hz).
        cfg: band, peak spacing, minimum duration and valid range.

    Returns:
        RrResult with BrPM (None when unavailable) and the filtered waveform.
    """
    cfg = cfg or RespirationConfig()
    x = np.asarray(raw, dtype=np.float64)
    empty = RrResult(None, np.zeros(0), np.zeros(0, dtype=np.int64))
    if fs <= 0 or x.size < 8 or x.size / fs < cfg.min_duration_s:
        return empty
    nyq = 0.5 * fs
    lo, hi = cfg.band_hz
    if not (0 < lo / nyq < hi / nyq < 1):
        return empty
    sos = butter(cfg.order, [lo / nyq, hi / nyq], btype="band", output="sos")
    y = sosfiltfilt(sos, detrend(x))
    std = float(np.std(y))
    floor = cfg.min_relative_amplitude * abs(float(np.mean(x))) + 1e-9
    if std <= floor:
        # No breathing modulation above filter round-off
        return RrResult(None, y, np.zeros(0, dtype=np.int64))
    distance = max(1, int(round(cfg.min_peak_distance_s * fs)))
    peaks, _ = find_peaks(y, distance=distance, prominence=0.1 * std)
    if peaks.size < 2:
        return RrResult(None, y, peaks)
    period = float(np.median(np.diff(peaks))) / fs
    brpm = 60.0 / period if period > 0 else None
    if brpm is None or not cfg.rate_range[0] <= brpm <= cfg.rate_range[1]:
        return RrResult(None, y, peaks)
    return RrResult(round(brpm, 1), y, peaks)

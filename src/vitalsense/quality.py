"""Spectral quality measures for heart-rate candidates.

Includes an in-band SNR against the remaining bins and a harmonic
consistency score based on the power at twice the candidate frequency.
"""

from __future__ import annotations

import numpy as np


def band_snr(
    power_spectrum: np.ndarray,
    peak_index: int,
    band: np.ndarray,
    guard_bins: int = 0,
) -> float:
    """Peak power divided by the mean power of the other in-band bins.

    Bins within ``guard_bins`` of the peak are excluded from the noise floor
    so that a zero-padded main lobe is not counted as noise.

    Args:
        power_spectrum: power (magnitude squared) spectrum.
        peak_index: index of the candidate peak.
        band: boolean mask of the search band (same length as the spectrum).
        guard_bins: half-width around the peak excluded from the noise.
    """
    p = np.asarray(power_spectrum, dtype=np.float64)
    if p.size == 0 or not 0 <= peak_index < p.size:
        return 0.0
    noise_mask = np.asarray(band, dtype=bool).copy()
    i0 = max(0, int(peak_index) - int(guard_bins))
    i1 = min(p.size, int(peak_index) + int(guard_bins) + 1)
    noise_mask[i0:i1] = False
    peak = float(p[peak_index])
    if not np.any(noise_mask):
        return 0.0
    noise = float(np.mean(p[noise_mask]))
    if noise <= 0.0:
        return float("inf") if peak > 0.0 else 0.0
    return peak / noise


def harmonic_ratio(
    power_spectrum: np.ndarray,
    freqs: np.ndarray,
    f0: float,
    tolerance_hz: float = 0.1,
) -> float | None:
    """Ratio of the strongest power near 2*f0 to the power at f0.

    Returns None when 2*f0 lies outside the spectrum.
    """
    p = np.asarray(power_spectrum, dtype=np.float64)
    f = np.asarray(freqs, dtype=np.float64)
    if p.size == 0 or f0 <= 0 or 2.0 * f0 > float(f[-1]):
        return None
    i0 = int(np.argmin(np.abs(f - f0)))
    base = float(p[i0])
    if base <= 0:
        return None
    near = np.abs(f - 2.0 * f0) <= tolerance_hz
    if not np.any(near):
        near = np.zeros_like(f, dtype=bool)
        near[int(np.argmin(np.abs(f - 2.0 * f0)))] = True
    return float(np.max(p[near])) / base


def harmonic_confidence(ratio: float | None, lo: float = 0.10, hi: float = 0.50) -> float:
    """Map a harmonic ratio to [0, 1]; 1 inside [lo, hi], linear decay outside."""
    if ratio is None:
        return 0.0
    if lo <= ratio <= hi:
        return 1.0
    if ratio < lo:
        return float(np.clip(ratio / lo, 0.0, 1.0)) if lo > 0 else 0.0
    return float(np.clip(1.0 - (ratio - hi) / max(1e-9, 1.0 - hi), 0.0, 1.0))

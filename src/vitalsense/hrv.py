"""Heart-rate variability from RR interval series.

Video does not give reliably time-stamped individual beats, so the RR series
is synthesized from the validated heart rate: each accepted value contributes
one interval of ``60000 / bpm`` ms plus uniform jitter. Metrics are grouped in
domains; each domain has its own minimum length and its own fault boundary.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Deque, Dict, Optional, Sequence, Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from scipy.signal import periodogram

from .config import HrvConfig
from .models import HRVMetricSet

logger = logging.getLogger(__name__)

Metrics = Dict[str, object]


class RRSynthesizer:
    """Bounded RR interval series derived from validated heart rates."""

    def __init__(self, cfg: Optional[HrvConfig] = None, rng: Optional[np.random.Generator] = None) -> None:
        self.cfg = cfg or HrvConfig()
        self._rng = rng if rng is not None else np.random.default_rng(self.cfg.seed)
        self._rr: Deque[float] = deque(maxlen=self.cfg.max_intervals)

    def __len__(self) -> int:
        return len(self._rr)

    def push(self, bpm: float) -> Optional[float]:
        if bpm <= 0:
            return None
        j = float(self.cfg.jitter_ms)
        rr = 60000.0 / float(bpm) + float(self._rng.uniform(-j, j))
        self._rr.append(rr)
        return rr

    def series(self) -> np.ndarray:
        return np.array(self._rr, dtype=np.float64)

    def reset(self) -> None:
        self._rr.clear()


# ---------------------------------------------------------------------------
# Time domain


def time_domain(rr: np.ndarray) -> Metrics:
    rr = np.asarray(rr, dtype=np.float64)
    d = np.diff(rr)
    ad = np.abs(d)
    nn50 = int(np.count_nonzero(ad > 50.0))
    nn20 = int(np.count_nonzero(ad > 20.0))
    return {
        "rmssd": round(float(np.sqrt(np.mean(d**2))), 2),
        "sdnn": round(float(np.std(rr)), 2),
        "pnn50": round(100.0 * nn50 / d.size, 2),
        "pnn20": round(100.0 * nn20 / d.size, 2),
        "sdsd": round(float(np.std(d)), 2),
        "nn50": nn50,
        "nn20": nn20,
        "mean_rr": round(float(np.mean(rr)), 1),
        "median_rr": round(float(np.median(rr)), 1),
        "range_rr": round(float(np.ptp(rr)), 1),
    }


# ---------------------------------------------------------------------------
# Frequency domain


def resample_rr(rr: np.ndarray, fs: float = 4.0) -> np.ndarray:
    """Linearly interpolate the RR tachogram onto a uniform ``fs`` grid."""
    rr = np.asarray(rr, dtype=np.float64)
    t = np.cumsum(rr) / 1000.0
    if t.size < 2 or t[-1] <= t[0]:
        return np.zeros(0)
    grid = np.arange(t[0], t[-1], 1.0 / fs)
    return np.interp(grid, t, rr)


def _band(freqs: np.ndarray, band: Tuple[float, float]) -> np.ndarray:
    return (freqs >= band[0]) & (freqs < band[1])


def frequency_domain(rr: np.ndarray, cfg: HrvConfig) -> Metrics:
    x = resample_rr(rr, cfg.resample_hz)
    if x.size < 8:
        return {}
    freqs, psd = periodogram(x, fs=cfg.resample_hz, window="hann", detrend="constant")
    df = float(freqs[1] - freqs[0])
    out: Metrics = {}
    powers: Dict[str, float] = {}
    for name, band in (("vlf", cfg.vlf_band), ("lf", cfg.lf_band), ("hf", cfg.hf_band)):
        m = _band(freqs, band)
        if not np.any(m):
            continue  # band not resolvable at this record length
        powers[name] = float(np.sum(psd[m]) * df)
        out[f"{name}_power"] = round(powers[name], 2)
        if name in ("lf", "hf"):
            out[f"{name}_peak_hz"] = round(float(freqs[m][int(np.argmax(psd[m]))]), 3)
    if powers:
        out["total_power"] = round(sum(powers.values()), 2)
    lf, hf = powers.get("lf"), powers.get("hf")
    if lf is not None and hf is not None:
        if hf > 0:
            out["lf_hf_ratio"] = round(lf / hf, 2)
        if lf + hf > 0:
            out["lf_nu"] = round(100.0 * lf / (lf + hf), 1)
            out["hf_nu"] = round(100.0 * hf / (lf + hf), 1)
    return out


# ---------------------------------------------------------------------------
# Geometric


def geometric(rr: np.ndarray, bin_ms: float = 7.8125) -> Metrics:
    rr = np.asarray(rr, dtype=np.float64)
    bins = np.round(rr / bin_ms).astype(np.int64)
    _, counts = np.unique(bins, return_counts=True)
    q75, q25 = np.percentile(rr, [75, 25])
    return {
        "triangular_index": round(rr.size / float(counts.max()), 2),
        "tinn": round(float(q75 - q25), 2),
    }


# ---------------------------------------------------------------------------
# Nonlinear


def _templates(x: np.ndarray, m: int) -> np.ndarray:
    return sliding_window_view(np.asarray(x, dtype=np.float64), m)


def _chebyshev(t: np.ndarray) -> np.ndarray:
    return np.max(np.abs(t[:, None, :] - t[None, :, :]), axis=2)


def sample_entropy(x: Sequence[float], m: int = 2, r: float = 0.2) -> Optional[float]:
    """SampEn with absolute tolerance ``r``; None when no m+1 matches exist."""
    x = np.asarray(x, dtype=np.float64)
    n = x.size
    if n < m + 2 or r <= 0:
        return None
    # Same template count for m and m+1 (Richman & Moorman)
    tm = _templates(x, m)[: n - m]
    tm1 = _templates(x, m + 1)
    iu = np.triu_indices(n - m, k=1)
    b = int(np.count_nonzero(_chebyshev(tm)[iu] <= r))
    a = int(np.count_nonzero(_chebyshev(tm1)[iu] <= r))
    if a == 0 or b == 0:
        return None
    return float(-np.log(a / b))


def approximate_entropy(x: Sequence[float], m: int = 2, r: float = 0.2) -> Optional[float]:
    x = np.asarray(x, dtype=np.float64)
    n = x.size
    if n < m + 2 or r <= 0:
        return None

    def phi(k: int) -> float:
        t = _templates(x, k)
        c = np.mean(_chebyshev(t) <= r, axis=1)
        return float(np.mean(np.log(c)))

    return phi(m) - phi(m + 1)


def dfa_alpha(x: Sequence[float], scales: Tuple[int, int], min_segments: int = 2) -> Optional[float]:
    """DFA scaling exponent over integer box sizes in ``scales`` (inclusive)."""
    x = np.asarray(x, dtype=np.float64)
    y = np.cumsum(x - x.mean())
    log_s, log_f = [], []
    for s in range(int(scales[0]), int(scales[1]) + 1):
        nseg = y.size // s
        if nseg < min_segments or s < 3:
            continue
        segs = y[: nseg * s].reshape(nseg, s)
        i = np.arange(s, dtype=np.float64)
        coef = np.polyfit(i, segs.T, 1)  # (2, nseg)
        trend = np.outer(coef[0], i) + coef[1][:, None]
        f = float(np.sqrt(np.mean((segs - trend) ** 2)))
        if f > 0:
            log_s.append(np.log(s))
            log_f.append(np.log(f))
    if len(log_s) < 2:
        return None
    return float(np.polyfit(log_s, log_f, 1)[0])


def poincare(rr: np.ndarray) -> Metrics:
    rr = np.asarray(rr, dtype=np.float64)
    sd1 = float(np.std(np.diff(rr)) / np.sqrt(2.0))
    sd2 = float(np.std(rr[1:] + rr[:-1]) / np.sqrt(2.0))
    out: Metrics = {"sd1": round(sd1, 2), "sd2": round(sd2, 2)}
    if sd2 > 0:
        out["sd_ratio"] = round(sd1 / sd2, 3)
    return out


def nonlinear(rr: np.ndarray, cfg: HrvConfig) -> Metrics:
    rr = np.asarray(rr, dtype=np.float64)
    r = cfg.entropy_r * float(np.std(rr))
    out: Metrics = {}
    for key, fn in (
        ("sample_entropy", lambda: sample_entropy(rr, cfg.entropy_m, r)),
        ("approximate_entropy", lambda: approximate_entropy(rr, cfg.entropy_m, r)),
        ("dfa_alpha1", lambda: dfa_alpha(rr, cfg.dfa_short)),
        ("dfa_alpha2", lambda: dfa_alpha(rr, cfg.dfa_long)),
    ):
        v = fn()
        if v is not None and np.isfinite(v):
            out[key] = round(v, 3)
    out.update(poincare(rr))
    return out


# ---------------------------------------------------------------------------
# Autonomic balance and rhythm


def autonomic(rr: np.ndarray) -> Metrics:
    rr = np.asarray(rr, dtype=np.float64)
    d = np.diff(rr)
    out: Metrics = {}
    sdnn = float(np.std(rr))
    if sdnn > 0:
        balance = float(np.sqrt(np.mean(d**2))) / sdnn
        if balance < 0.3:
            status = "sympathetic_dominance"
        elif balance > 0.7:
            status = "parasympathetic_dominance"
        else:
            status = "balanced"
        out["autonomic_balance"] = round(balance, 3)
        out["autonomic_status"] = status
    mean_diff = float(np.mean(np.abs(d)))
    if mean_diff > 50:
        out["rhythm_regularity"] = "irregular"
    elif mean_diff > 25:
        out["rhythm_regularity"] = "slightly_irregular"
    else:
        out["rhythm_regularity"] = "regular"
    return out


class HrvEngine:
    """Compute an HRVMetricSet with every domain gated and isolated."""

    def __init__(self, cfg: Optional[HrvConfig] = None) -> None:
        self.cfg = cfg or HrvConfig()

    def domains(self) -> Tuple[Tuple[str, int, Callable[[np.ndarray], Metrics]], ...]:
        cfg = self.cfg
        return (
            ("time", cfg.min_time_domain, time_domain),
            ("frequency", cfg.min_frequency_domain, lambda rr: frequency_domain(rr, cfg)),
            ("geometric", cfg.min_geometric, lambda rr: geometric(rr, cfg.histogram_bin_ms)),
            ("nonlinear", cfg.min_nonlinear, lambda rr: nonlinear(rr, cfg)),
            ("autonomic", cfg.min_time_domain, autonomic),
        )

    def compute(self, rr: Sequence[float]) -> HRVMetricSet:
        x = np.asarray(rr, dtype=np.float64)
        values: Metrics = {}
        for name, minimum, fn in self.domains():
            if x.size < minimum:
                continue
            try:
                values.update(fn(x))
            except Exception:
                logger.exception("HRV %s-domain computation failed", name)
        return HRVMetricSet(**values)

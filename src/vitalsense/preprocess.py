"""Signal conditioning for rPPG.

Keeps the green-channel ring buffer and turns its most recent samples into a
windowed, band-limited signal for spectral analysis.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

import numpy as np
from scipy.signal import butter, lfilter

from .config import ConditionerConfig
from .models import ChannelSample, SessionStatus


class SignalWindow:
    """Fixed-capacity FIFO of scalar channel values with timestamps.

    Analyzers read copies from ``values()``/``timestamps()``; only the owner
    appends.
    """

    def __init__(self, capacity: int = 900) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._values: Deque[float] = deque(maxlen=int(capacity))
        self._times: Deque[float] = deque(maxlen=int(capacity))

    @property
    def capacity(self) -> int:
        return int(self._values.maxlen or 0)

    def __len__(self) -> int:
        return len(self._values)

    def append(self, value: float, timestamp: float) -> None:
        self._values.append(float(value))
        self._times.append(float(timestamp))

    def values(self, last: Optional[int] = None) -> np.ndarray:
        x = np.array(self._values, dtype=np.float64)
        return x if last is None else x[-int(last):]

    def timestamps(self, last: Optional[int] = None) -> np.ndarray:
        t = np.array(self._times, dtype=np.float64)
        return t if last is None else t[-int(last):]

    def clear(self) -> None:
        self._values.clear()
        self._times.clear()


def estimate_fs(timestamps: np.ndarray, default: float = 30.0, max_diffs: int = 50) -> float:
    """Sampling rate from the median timestamp spacing, or ``default``."""
    t = np.asarray(timestamps, dtype=np.float64)
    if t.size < 2:
        return float(default)
    d = np.diff(t[-min(t.size, max_diffs + 1):])
    d = d[np.isfinite(d) & (d > 0)]
    if d.size == 0:
        return float(default)
    return float(1.0 / np.median(d))


def highpass(x: np.ndarray, fs: float, fc: float, order: int = 2) -> np.ndarray:
    """Causal Butterworth high-pass (lfilter)."""
    x = np.asarray(x, dtype=np.float64)
    wn = fc / (0.5 * fs) if fs > 0 else 0.0
    if not (0 < wn < 1):
        return x.copy()
    b, a = butter(order, wn, btype="highpass")
    return lfilter(b, a, x)


def lowpass(x: np.ndarray, fs: float, fc: float, order: int = 2) -> np.ndarray:
    """Causal Butterworth low-pass (lfilter)."""
    x = np.asarray(x, dtype=np.float64)
    wn = fc / (0.5 * fs) if fs > 0 else 0.0
    if not (0 < wn < 1):
        return x.copy()
    b, a = butter(order, wn, btype="lowpass")
    return lfilter(b, a, x)


@dataclass
class ConditionedSignal:
    status: SessionStatus  # ACCUMULATING or READY
    filtered: Optional[np.ndarray]
    raw: np.ndarray  # analysis window before windowing/filtering
    fs: float
    buffer_length: int
    quality: float


class SignalConditioner:
    """Append accepted samples and produce the band-limited analysis window."""

    def __init__(self, cfg: Optional[ConditionerConfig] = None) -> None:
        self.cfg = cfg or ConditionerConfig()

    def new_window(self) -> SignalWindow:
        return SignalWindow(self.cfg.capacity)

    def push(self, window: SignalWindow, sample: ChannelSample) -> None:
        window.append(sample.g, sample.timestamp)

    def condition(self, window: SignalWindow, quality: float = 1.0) -> ConditionedSignal:
        cfg = self.cfg
        n = len(window)
        fs = estimate_fs(window.timestamps(), default=cfg.nominal_fs)
        raw = window.values(last=cfg.analysis_window)
        if n < cfg.min_samples:
            return ConditionedSignal(SessionStatus.ACCUMULATING, None, raw, fs, n, quality)
        x = raw - float(np.mean(raw))
        x = x * np.hamming(x.size)
        # Keep both cutoffs below Nyquist for low frame rates
        lp = min(cfg.lowpass_hz, 0.45 * fs)
        hp = min(cfg.highpass_hz, 0.5 * lp)
        y = highpass(x, fs, hp, order=cfg.order)
        y = lowpass(y, fs, lp, order=cfg.order)
        return ConditionedSignal(SessionStatus.READY, y, raw, fs, n, quality)

"""Temporal validation and smoothing of per-cycle heart-rate estimates.

A short window of consistent estimates is averaged by quality; otherwise the
new estimate is blended into the running value. Either way the output never
moves by more than ``max_change_bpm`` per evaluation cycle.
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

import numpy as np

from .config import ValidatorConfig
from .models import HeartRateEstimate


@dataclass
class ValidatedRate:
    bpm: int
    quality: float
    method: str  # initial | consistent | smoothed
    clamped: bool


class TemporalValidator:
    def __init__(self, cfg: Optional[ValidatorConfig] = None) -> None:
        self.cfg = cfg or ValidatorConfig()
        self.history: Deque[HeartRateEstimate] = deque(maxlen=self.cfg.history_size)
        self._current: Optional[int] = None

    @property
    def current_bpm(self) -> Optional[int]:
        return self._current

    def reset(self) -> None:
        self.history.clear()
        self._current = None

    def _consistent_window(self) -> Optional[ValidatedRate]:
        cfg = self.cfg
        if len(self.history) < cfg.min_history:
            return None
        recent = list(self.history)[-cfg.consistency_window:]
        bpms = np.array([e.bpm for e in recent], dtype=np.float64)
        mean = float(bpms.mean())
        if mean <= 0 or np.any(np.abs(bpms - mean) > cfg.max_deviation * mean):
            return None
        w = np.array([e.quality for e in recent], dtype=np.float64)
        if float(w.sum()) <= 0:
            w = np.ones_like(bpms)
        avg = float(np.sum(w * bpms) / np.sum(w))
        return ValidatedRate(int(round(avg)), float(w.mean()), "consistent", False)

    def update(self, estimate: HeartRateEstimate) -> ValidatedRate:
        """Add an accepted estimate and return the new smoothed heart rate."""
        cfg = self.cfg
        self.history.append(estimate)
        out = self._consistent_window()
        if out is None:
            if self._current is None:
                out = ValidatedRate(int(estimate.bpm), estimate.quality, "initial", False)
            else:
                blended = (1.0 - cfg.alpha) * self._current + cfg.alpha * estimate.bpm
                out = ValidatedRate(int(round(blended)), estimate.quality, "smoothed", False)
        if self._current is not None:
            step = int(math.floor(cfg.max_change_bpm))
            lo, hi = self._current - step, self._current + step
            if not lo <= out.bpm <= hi:
                out = ValidatedRate(min(max(out.bpm, lo), hi), out.quality, out.method, True)
        self._current = out.bpm
        return out

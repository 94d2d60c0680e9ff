"""Voice activity detection and input level metering for audio blocks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .config import VoiceConfig


@dataclass
class VoiceActivity:
    has_voice: bool
    energy: float  # RMS
    zcr: float  # zero crossings per sample
    confidence: float


@dataclass
class AudioLevels:
    rms: float
    peak: float
    snr_db: float
    grade: str  # excellent | good | fair | poor


def rms(x: np.ndarray) -> float:
    x = np.asarray(x, dtype=np.float64)
    if x.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(x * x)))


def zero_crossing_rate(x: np.ndarray) -> float:
    """Fraction of adjacent sample pairs whose sign changes."""
    x = np.asarray(x, dtype=np.float64)
    if x.size < 2:
        return 0.0
    s = np.signbit(x)
    return float(np.count_nonzero(s[1:] != s[:-1])) / float(x.size)


def detect_voice_activity(x: np.ndarray, cfg: Optional[VoiceConfig] = None) -> VoiceActivity:
    """Energy + zero-crossing VAD.

    Voiced speech is loud relative to the floor and has a low crossing rate;
    fricatives and broadband noise cross zero far more often.
    """
    cfg = cfg or VoiceConfig()
    energy = rms(x)
    zcr = zero_crossing_rate(x)
    has_voice = energy > cfg.vad_rms and zcr < cfg.vad_zcr
    confidence = min(1.0, energy / (cfg.vad_rms * 10.0)) if has_voice else 0.0
    return VoiceActivity(has_voice, energy, zcr, confidence)


def audio_levels(x: np.ndarray) -> AudioLevels:
    x = np.asarray(x, dtype=np.float64)
    if x.size == 0:
        return AudioLevels(0.0, 0.0, 0.0, "poor")
    mag = np.abs(x)
    level = rms(x)
    peak = float(mag.max())
    floor = float(np.percentile(mag, 10))
    snr = 20.0 * float(np.log10((peak + 1e-12) / (floor + 1e-6)))
    if level > 0.01 and snr > 20:
        grade = "excellent"
    elif level > 0.005 and snr > 15:
        grade = "good"
    elif level > 0.002 and snr > 10:
        grade = "fair"
    else:
        grade = "poor"
    return AudioLevels(round(level, 5), round(peak, 5), round(snr, 2), grade)

"""Data model shared by the processing stages.

Optional metric fields are ``None`` when their preconditions are unmet and are
left out of ``to_dict()``; they are never reported as zero.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np


class SessionStatus(str, Enum):
    ACCUMULATING = "accumulating"
    READY = "ready"
    ANALYZING = "analyzing"
    STOPPED = "stopped"
    FAILED = "failed"


class AnalysisReason(str, Enum):
    """Why a frequency analysis cycle did or did not yield an estimate."""

    OK = "ok"
    INSUFFICIENT_DATA = "insufficient_data"
    LOW_SNR = "low_snr"
    OUT_OF_RANGE = "out_of_range"


def _present(obj: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for f in fields(obj):
        v = getattr(obj, f.name)
        if v is None:
            continue
        if isinstance(v, tuple):
            v = list(v)
        out[f.name] = v
    return out


@dataclass(frozen=True)
class Frame:
    pixels: np.ndarray  # HxWx3 or HxWx4 uint8, RGB(A) order
    width: int
    height: int
    timestamp: float


@dataclass(frozen=True)
class VoiceFrame:
    samples: np.ndarray  # float32 in [-1, 1]
    sample_rate: int
    timestamp: float


@dataclass(frozen=True)
class RegionSample:
    name: str
    r: float
    g: float
    b: float
    quality: float  # skin fraction inside the region
    skin_pixels: int


@dataclass(frozen=True)
class ChannelSample:
    r: float
    g: float
    b: float
    quality: float
    timestamp: float
    regions: int = 1
    region_data: Tuple[RegionSample, ...] = ()


@dataclass(frozen=True)
class FrequencyPeak:
    frequency_hz: float
    power: float
    snr: float
    harmonic_confidence: float


@dataclass(frozen=True)
class HeartRateEstimate:
    bpm: int
    quality: float
    timestamp: float


@dataclass
class HRVMetricSet:
    # time domain
    rmssd: Optional[float] = None
    sdnn: Optional[float] = None
    pnn50: Optional[float] = None
    pnn20: Optional[float] = None
    sdsd: Optional[float] = None
    nn50: Optional[int] = None
    nn20: Optional[int] = None
    mean_rr: Optional[float] = None
    median_rr: Optional[float] = None
    range_rr: Optional[float] = None
    # frequency domain
    vlf_power: Optional[float] = None
    lf_power: Optional[float] = None
    hf_power: Optional[float] = None
    total_power: Optional[float] = None
    lf_hf_ratio: Optional[float] = None
    lf_nu: Optional[float] = None
    hf_nu: Optional[float] = None
    lf_peak_hz: Optional[float] = None
    hf_peak_hz: Optional[float] = None
    # geometric
    triangular_index: Optional[float] = None
    tinn: Optional[float] = None
    # nonlinear
    sample_entropy: Optional[float] = None
    approximate_entropy: Optional[float] = None
    dfa_alpha1: Optional[float] = None
    dfa_alpha2: Optional[float] = None
    sd1: Optional[float] = None
    sd2: Optional[float] = None
    sd_ratio: Optional[float] = None
    # autonomic / rhythm
    autonomic_balance: Optional[float] = None
    autonomic_status: Optional[str] = None
    rhythm_regularity: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _present(self)


@dataclass
class DerivedVitals:
    spo2: Optional[int] = None
    systolic: Optional[int] = None
    diastolic: Optional[int] = None
    respiratory_rate: Optional[float] = None
    perfusion_index: Optional[float] = None
    stress_level: Optional[int] = None

    @property
    def blood_pressure(self) -> Optional[str]:
        if self.systolic is None or self.diastolic is None:
            return None
        return f"{self.systolic}/{self.diastolic}"

    def to_dict(self) -> Dict[str, Any]:
        d = _present(self)
        bp = self.blood_pressure
        if bp is not None:
            d["blood_pressure"] = bp
        return d


@dataclass
class VoiceBiomarkerSet:
    f0: Optional[float] = None
    f0_confidence: Optional[float] = None
    jitter: Optional[float] = None
    shimmer: Optional[float] = None
    hnr: Optional[float] = None
    spectral_centroid: Optional[float] = None
    spectral_rolloff: Optional[float] = None
    spectral_flux: Optional[float] = None
    mfcc: Optional[Tuple[float, ...]] = None
    voiced_frame_ratio: Optional[float] = None
    speech_rate: Optional[float] = None
    vocal_effort: Optional[float] = None
    breathiness: Optional[float] = None
    vocal_stress: Optional[float] = None
    valence: Optional[float] = None
    arousal: Optional[float] = None
    breathing_rate: Optional[float] = None
    breathing_pattern: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _present(self)

    def is_empty(self) -> bool:
        return not self.to_dict()


@dataclass(frozen=True)
class BiomarkerSnapshot:
    rppg: Dict[str, Any]
    voice: Dict[str, Any]
    calculated_count: int
    quality_score: float
    timestamp: float
    frame_number: int
    heart_rate: Optional[int] = None
    status: SessionStatus = SessionStatus.ANALYZING
    extras: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rppg": dict(self.rppg),
            "voice": dict(self.voice),
            "calculated_count": self.calculated_count,
            "quality_score": self.quality_score,
            "timestamp": self.timestamp,
            "frame_number": self.frame_number,
            "heart_rate": self.heart_rate,
            "status": self.status.value,
            **self.extras,
        }

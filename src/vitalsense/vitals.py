"""Derived vitals: SpO2, blood pressure, perfusion index and stress.

All of these are heuristic estimates built on the rPPG channel means, the
validated heart rate and HRV; none is a clinical measurement. Each function
returns None when its inputs are missing or of too low quality.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple

import numpy as np

from .config import (
    BloodPressureConfig,
    PerfusionConfig,
    RespirationConfig,
    SpO2Config,
    StressConfig,
)
from .models import ChannelSample, DerivedVitals, HRVMetricSet
from .respiration import estimate_respiratory_rate

logger = logging.getLogger(__name__)


def ac_amplitude(filtered: Optional[np.ndarray]) -> Optional[float]:
    """Pulsatile (AC) amplitude as the standard deviation of the filtered window."""
    if filtered is None:
        return None
    x = np.asarray(filtered, dtype=np.float64)
    if x.size < 2:
        return None
    ac = float(np.std(x))
    return ac if ac > 0 else None


def estimate_spo2(
    sample: ChannelSample,
    filtered: Optional[np.ndarray],
    quality: float,
    cfg: Optional[SpO2Config] = None,
) -> Optional[int]:
    """Ratio-of-ratios SpO2 with blue as the infrared proxy, clamped to [85, 100]."""
    cfg = cfg or SpO2Config()
    if quality < cfg.min_quality or sample.r <= 0 or sample.b <= 0 or sample.g <= 0:
        return None
    ac = ac_amplitude(filtered)
    if ac is None:
        return None
    red_ratio = ac / sample.r
    ir_ratio = ac / sample.b
    ratio = red_ratio / ir_ratio
    spo2 = cfg.intercept - cfg.slope * ratio
    spo2 += (quality - 0.5) * cfg.quality_gain
    if sample.regions >= cfg.multi_region_min:
        spo2 += cfg.multi_region_bonus
    return int(np.clip(round(spo2), cfg.lower, cfg.upper))


def estimate_blood_pressure(
    heart_rate: Optional[float],
    quality: float,
    rmssd: Optional[float] = None,
    cfg: Optional[BloodPressureConfig] = None,
) -> Optional[Tuple[int, int]]:
    """Return (systolic, diastolic) mmHg adjusted from a 120/80 baseline."""
    cfg = cfg or BloodPressureConfig()
    if not heart_rate or quality < cfg.min_quality:
        return None
    hr_delta = float(heart_rate) - cfg.baseline_hr
    sys_adj = hr_delta * cfg.hr_gain_systolic
    dia_adj = hr_delta * cfg.hr_gain_diastolic
    age_adj = 0.0
    if rmssd is not None:
        rd = float(rmssd) - cfg.baseline_rmssd
        sys_adj += rd * cfg.rmssd_gain_systolic
        dia_adj += rd * cfg.rmssd_gain_diastolic
        # Low HRV reads as an older vascular age
        est_age = float(np.clip(80.0 - (float(rmssd) - 10.0) * 1.5, 20.0, 80.0))
        age_adj = (est_age - 40.0) * 0.5
    qf = (quality - 0.5) * cfg.quality_gain
    sys_adj += qf
    dia_adj += qf * cfg.quality_diastolic_share
    systolic = round(cfg.baseline_systolic + sys_adj + age_adj)
    diastolic = round(cfg.baseline_diastolic + dia_adj + age_adj * 0.5)
    systolic = int(np.clip(systolic, *cfg.systolic_range))
    diastolic = int(np.clip(diastolic, *cfg.diastolic_range))
    if systolic <= diastolic:
        systolic = int(diastolic + cfg.min_pulse_pressure)
    return systolic, diastolic


def estimate_perfusion_index(
    sample: ChannelSample,
    filtered: Optional[np.ndarray],
    quality: float,
    cfg: Optional[PerfusionConfig] = None,
) -> Optional[float]:
    """(AC / DC) * 100 on the green channel, scaled by quality."""
    cfg = cfg or PerfusionConfig()
    ac = ac_amplitude(filtered)
    if ac is None or sample.g <= 0:
        return None
    pi = (ac / sample.g) * 100.0 * float(quality)
    return round(float(np.clip(pi, cfg.lower, cfg.upper)), 2)


def estimate_stress(
    heart_rate: Optional[float] = None,
    rmssd: Optional[float] = None,
    lf_hf_ratio: Optional[float] = None,
    vocal_stress: Optional[float] = None,
    cfg: Optional[StressConfig] = None,
) -> Optional[int]:
    """Composite 0..100 stress score; None when no factor is available."""
    cfg = cfg or StressConfig()
    score = 0.0
    factors = 0
    if heart_rate is not None:
        if heart_rate > cfg.hr_high:
            score += cfg.hr_high_points
        elif heart_rate > cfg.hr_elevated:
            score += cfg.hr_elevated_points
        elif heart_rate < cfg.hr_low:
            score += cfg.hr_low_points
        factors += 1
    if rmssd is not None:
        if rmssd < cfg.rmssd_very_low:
            score += cfg.rmssd_very_low_points
        elif rmssd < cfg.rmssd_low:
            score += cfg.rmssd_low_points
        elif rmssd > cfg.rmssd_good:
            score += cfg.rmssd_good_points
        factors += 1
    if lf_hf_ratio is not None:
        if lf_hf_ratio > cfg.lf_hf_high:
            score += cfg.lf_hf_high_points
        elif lf_hf_ratio > cfg.lf_hf_elevated:
            score += cfg.lf_hf_elevated_points
        factors += 1
    if vocal_stress is not None:
        score += float(vocal_stress) * cfg.vocal_weight
        factors += 1
    if factors == 0:
        return None
    return int(round(float(np.clip(score, 0.0, 100.0))))


@dataclass
class VitalsConfig:
    spo2: SpO2Config = field(default_factory=SpO2Config)
    blood_pressure: BloodPressureConfig = field(default_factory=BloodPressureConfig)
    respiration: RespirationConfig = field(default_factory=RespirationConfig)
    perfusion: PerfusionConfig = field(default_factory=PerfusionConfig)
    stress: StressConfig = field(default_factory=StressConfig)


class VitalsEstimator:
    """Run every derived-vital heuristic behind its own fault boundary."""

    def __init__(self, cfg: Optional[VitalsConfig] = None) -> None:
        self.cfg = cfg or VitalsConfig()

    def _safe(self, name: str, fn: Callable[[], object]) -> object:
        try:
            return fn()
        except Exception:
            logger.exception("Derived vital %s failed", name)
            return None

    def estimate(
        self,
        sample: Optional[ChannelSample],
        filtered: Optional[np.ndarray],
        raw_buffer: np.ndarray,
        fs: float,
        quality: float,
        heart_rate: Optional[int],
        hrv: Optional[HRVMetricSet] = None,
        vocal_stress: Optional[float] = None,
    ) -> DerivedVitals:
        cfg = self.cfg
        hrv = hrv or HRVMetricSet()
        out = DerivedVitals()
        if sample is not None:
            out.spo2 = self._safe("spo2", lambda: estimate_spo2(sample, filtered, quality, cfg.spo2))
            out.perfusion_index = self._safe(
                "perfusion_index",
                lambda: estimate_perfusion_index(sample, filtered, quality, cfg.perfusion),
            )
        bp = self._safe(
            "blood_pressure",
            lambda: estimate_blood_pressure(heart_rate, quality, hrv.rmssd, cfg.blood_pressure),
        )
        if bp is not None:
            out.systolic, out.diastolic = bp
        rr = self._safe(
            "respiratory_rate",
            lambda: estimate_respiratory_rate(raw_buffer, fs, cfg.respiration),
        )
        out.respiratory_rate = getattr(rr, "brpm", None)
        out.stress_level = self._safe(
            "stress_level",
            lambda: estimate_stress(heart_rate, hrv.rmssd, hrv.lf_hf_ratio, vocal_stress, cfg.stress),
        )
        return out

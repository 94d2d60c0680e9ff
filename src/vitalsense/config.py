"""Per-component configuration dataclasses and a JSON/env loader.

Every heuristic constant used by a stage lives in that stage's config so it
can be overridden without touching the formulas.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .errors import ConfigurationError

Box = Tuple[float, float, float, float]  # x, y, w, h as fractions


def _default_regions() -> Dict[str, Box]:
    return {
        "forehead": (0.30, 0.15, 0.40, 0.20),
        "left_cheek": (0.15, 0.35, 0.25, 0.30),
        "right_cheek": (0.60, 0.35, 0.25, 0.30),
        "nose": (0.40, 0.40, 0.20, 0.25),
    }


@dataclass
class RegionConfig:
    regions: Dict[str, Box] = field(default_factory=_default_regions)
    min_skin_fraction: float = 0.30
    min_skin_pixels: int = 50
    downscale: int = 1  # stride used when sampling region pixels


@dataclass
class ConditionerConfig:
    capacity: int = 900  # 30 s at 30 Hz
    analysis_window: int = 60  # 2 s at 30 Hz
    min_samples: int = 120
    highpass_hz: float = 0.75
    lowpass_hz: float = 3.5
    order: int = 2
    nominal_fs: float = 30.0


@dataclass
class AnalyzerConfig:
    fmin_hz: float = 0.75
    fmax_hz: float = 3.5
    min_snr: float = 2.0
    harmonic_min: float = 0.10
    harmonic_max: float = 0.50
    bpm_min: int = 45
    bpm_max: int = 200
    n_fft: int = 512
    min_length: int = 16


@dataclass
class ValidatorConfig:
    history_size: int = 10
    min_history: int = 3
    consistency_window: int = 5
    max_deviation: float = 0.20  # fraction of the window mean
    alpha: float = 0.3  # weight of the new value in exponential smoothing
    max_change_bpm: float = 15.0


@dataclass
class HrvConfig:
    max_intervals: int = 50
    jitter_ms: float = 25.0
    seed: Optional[int] = None
    min_time_domain: int = 10
    min_frequency_domain: int = 10
    min_geometric: int = 20
    min_nonlinear: int = 10
    resample_hz: float = 4.0
    vlf_band: Tuple[float, float] = (0.003, 0.04)
    lf_band: Tuple[float, float] = (0.04, 0.15)
    hf_band: Tuple[float, float] = (0.15, 0.40)
    histogram_bin_ms: float = 7.8125
    entropy_m: int = 2
    entropy_r: float = 0.2
    dfa_short: Tuple[int, int] = (4, 16)
    dfa_long: Tuple[int, int] = (16, 64)


@dataclass
class SpO2Config:
    intercept: float = 110.0
    slope: float = 25.0
    quality_gain: float = 10.0
    multi_region_bonus: float = 2.0
    multi_region_min: int = 3
    min_quality: float = 0.3
    lower: int = 85
    upper: int = 100


@dataclass
class BloodPressureConfig:
    baseline_systolic: float = 120.0
    baseline_diastolic: float = 80.0
    baseline_hr: float = 70.0
    baseline_rmssd: float = 35.0
    hr_gain_systolic: float = 0.6
    hr_gain_diastolic: float = 0.4
    rmssd_gain_systolic: float = -0.3
    rmssd_gain_diastolic: float = -0.2
    quality_gain: float = 15.0
    quality_diastolic_share: float = 0.6
    min_quality: float = 0.3
    systolic_range: Tuple[float, float] = (90.0, 200.0)
    diastolic_range: Tuple[float, float] = (60.0, 120.0)
    min_pulse_pressure: float = 20.0


@dataclass
class RespirationConfig:
    band_hz: Tuple[float, float] = (0.1, 0.5)
    min_peak_distance_s: float = 1.5
    min_duration_s: float = 20.0
    order: int = 2
    rate_range: Tuple[float, float] = (8.0, 40.0)
    # breathing amplitude floor, relative to the mean level of the raw buffer
    min_relative_amplitude: float = 1e-4


@dataclass
class PerfusionConfig:
    lower: float = 0.1
    upper: float = 10.0


@dataclass
class StressConfig:
    hr_high: float = 100.0
    hr_elevated: float = 85.0
    hr_low: float = 60.0
    hr_high_points: float = 30.0
    hr_elevated_points: float = 15.0
    hr_low_points: float = 10.0
    rmssd_very_low: float = 20.0
    rmssd_low: float = 30.0
    rmssd_good: float = 50.0
    rmssd_very_low_points: float = 25.0
    rmssd_low_points: float = 10.0
    rmssd_good_points: float = -5.0
    lf_hf_high: float = 4.0
    lf_hf_elevated: float = 2.0
    lf_hf_high_points: float = 20.0
    lf_hf_elevated_points: float = 10.0
    vocal_weight: float = 0.3


@dataclass
class VoiceConfig:
    buffer_seconds: float = 5.0
    analysis_seconds: float = 3.0
    min_seconds: float = 1.0
    analysis_interval: float = 2.0
    vad_rms: float = 0.01
    vad_zcr: float = 0.3
    f0_min: float = 50.0
    f0_max: float = 500.0
    f0_min_confidence: float = 0.3
    f0_history: int = 10
    harmonics: int = 10
    hnr_max: float = 30.0
    rolloff: float = 0.85
    mel_filters: int = 26
    mfcc_keep: int = 5
    frame_ms: float = 25.0
    envelope_ms: float = 10.0
    breathing_frame_ms: float = 100.0
    breathing_cutoff_hz: float = 2.0
    breathing_min_modulation: float = 0.2  # envelope std / mean


@dataclass
class SessionConfig:
    quality_threshold: float = 0.3
    evaluation_interval: int = 1  # frames per evaluation cycle
    trace_size: int = 100
    region: RegionConfig = field(default_factory=RegionConfig)
    conditioner: ConditionerConfig = field(default_factory=ConditionerConfig)
    analyzer: AnalyzerConfig = field(default_factory=AnalyzerConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    hrv: HrvConfig = field(default_factory=HrvConfig)
    spo2: SpO2Config = field(default_factory=SpO2Config)
    blood_pressure: BloodPressureConfig = field(default_factory=BloodPressureConfig)
    respiration: RespirationConfig = field(default_factory=RespirationConfig)
    perfusion: PerfusionConfig = field(default_factory=PerfusionConfig)
    stress: StressConfig = field(default_factory=StressConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)


ENV_PREFIX = "VITALSENSE_"
_ENV_FIELDS = ("quality_threshold", "evaluation_interval", "trace_size")


def _coerce(current: Any, value: Any, name: str) -> Any:
    if isinstance(current, tuple):
        if not isinstance(value, (list, tuple)) or len(value) != len(current):
            raise ConfigurationError(f"{name} expects {len(current)} values", field=name)
        return tuple(value)
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int) and not isinstance(value, bool):
        if isinstance(value, float) and not value.is_integer():
            raise ConfigurationError(f"{name} expects an integer", field=name)
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, dict):
        if not isinstance(value, Mapping):
            raise ConfigurationError(f"{name} expects a mapping", field=name)
        return {k: tuple(v) for k, v in value.items()}
    return value


def _merge(obj: Any, data: Mapping[str, Any], prefix: str = "") -> Any:
    known = {f.name for f in fields(obj)}
    updates: Dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}{key}"
        if key not in known:
            raise ConfigurationError(f"Unknown configuration key: {name}", field=name)
        current = getattr(obj, key)
        if is_dataclass(current):
            if not isinstance(value, Mapping):
                raise ConfigurationError(f"{name} expects a mapping", field=name)
            updates[key] = _merge(current, value, prefix=f"{name}.")
        elif current is None:
            updates[key] = value
        else:
            try:
                updates[key] = _coerce(current, value, name)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"Invalid value for {name}: {value!r}", field=name) from exc
    return replace(obj, **updates)


def config_from_dict(data: Mapping[str, Any]) -> SessionConfig:
    """Build a SessionConfig from nested mappings, rejecting unknown keys."""
    cfg = _merge(SessionConfig(), data)
    validate_config(cfg)
    return cfg


def validate_config(cfg: SessionConfig) -> None:
    if not 0.0 <= cfg.quality_threshold <= 1.0:
        raise ConfigurationError("quality_threshold must be in [0, 1]", field="quality_threshold")
    if cfg.evaluation_interval < 1:
        raise ConfigurationError("evaluation_interval must be >= 1", field="evaluation_interval")
    c = cfg.conditioner
    if c.analysis_window < 8 or c.analysis_window > c.capacity:
        raise ConfigurationError(
            "conditioner.analysis_window must be in [8, capacity]",
            field="conditioner.analysis_window",
        )
    if c.min_samples > c.capacity:
        raise ConfigurationError(
            "conditioner.min_samples must not exceed capacity", field="conditioner.min_samples"
        )
    if not 0.0 < c.highpass_hz < c.lowpass_hz:
        raise ConfigurationError("conditioner cutoffs must satisfy 0 < hp < lp", field="conditioner")
    a = cfg.analyzer
    if not 0.0 < a.fmin_hz < a.fmax_hz or a.bpm_min >= a.bpm_max:
        raise ConfigurationError("analyzer band is empty", field="analyzer")
    if cfg.validator.max_change_bpm <= 0:
        raise ConfigurationError("validator.max_change_bpm must be > 0", field="validator.max_change_bpm")


def load_config(path: Optional[Union[str, Path]] = None, env: Optional[Mapping[str, str]] = None) -> SessionConfig:
    """Load configuration from an optional JSON file plus ``VITALSENSE_*`` env vars.

    Args:
        path: JSON file with a (possibly partial) nested SessionConfig.
        env: environment mapping; defaults to ``os.environ``.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        p = Path(path)
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Config file not found: {p}", field="path") from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Config file is not valid JSON: {exc}", field="path") from exc
        if not isinstance(data, dict):
            raise ConfigurationError("Config root must be an object", field="path")
    env = os.environ if env is None else env
    for name in _ENV_FIELDS:
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is not None:
            data[name] = raw
    # env values arrive as strings
    if "quality_threshold" in data:
        data["quality_threshold"] = _number(data["quality_threshold"], "quality_threshold", float)
    for name in ("evaluation_interval", "trace_size"):
        if name in data:
            data[name] = _number(data[name], name, int)
    return config_from_dict(data)


def _number(value: Any, name: str, kind: type) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid value for {name}: {value!r}", field=name) from exc

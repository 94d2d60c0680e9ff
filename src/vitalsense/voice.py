"""Voice biomarkers from microphone audio.

Audio blocks are buffered; every ``analysis_interval`` seconds the most recent
``analysis_seconds`` are analyzed. Silent segments (no voice activity) yield
an empty biomarker set. Pitch comes from the autocorrelation peak, voice
quality from period and amplitude perturbation, and the prosodic scores are
threshold heuristics on spectral and energy features.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from scipy.fft import dct
from scipy.signal import lfilter, lfilter_zi

from .config import VoiceConfig
from .models import VoiceBiomarkerSet, VoiceFrame
from .vad import AudioLevels, audio_levels, detect_voice_activity

logger = logging.getLogger(__name__)


class AudioBuffer:
    """Rolling buffer of the last ``buffer_seconds`` of mono audio."""

    def __init__(self, sample_rate: int, cfg: Optional[VoiceConfig] = None) -> None:
        self.cfg = cfg or VoiceConfig()
        self.sample_rate = int(sample_rate)
        self._samples: Deque[np.ndarray] = deque()
        self._count = 0
        self._last_analysis: Optional[float] = None

    def __len__(self) -> int:
        return self._count

    @property
    def duration(self) -> float:
        return self._count / float(self.sample_rate) if self.sample_rate > 0 else 0.0

    def append(self, samples: np.ndarray) -> None:
        x = np.asarray(samples, dtype=np.float32).ravel()
        if x.size == 0:
            return
        self._samples.append(x)
        self._count += x.size
        limit = int(self.cfg.buffer_seconds * self.sample_rate)
        while self._samples and self._count - self._samples[0].size >= limit:
            self._count -= self._samples.popleft().size
        if self._count > limit and self._samples:
            # Trim the head block so exactly ``limit`` samples remain
            head = self._samples[0]
            cut = self._count - limit
            self._samples[0] = head[cut:]
            self._count = limit

    def latest(self, seconds: float) -> np.ndarray:
        if not self._samples:
            return np.zeros(0, dtype=np.float32)
        x = np.concatenate(list(self._samples))
        n = int(seconds * self.sample_rate)
        return x[-n:] if n > 0 else x

    def due(self, now: float) -> bool:
        """True when enough audio is buffered and the analysis interval elapsed."""
        if self.duration < self.cfg.min_seconds:
            return False
        if self._last_analysis is None:
            return True
        return now - self._last_analysis >= self.cfg.analysis_interval

    def mark(self, now: float) -> None:
        self._last_analysis = float(now)

    def clear(self) -> None:
        self._samples.clear()
        self._count = 0
        self._last_analysis = None


# ---------------------------------------------------------------------------
# Pitch and voice quality


def _parabolic(y: np.ndarray, i: int) -> Tuple[float, float]:
    """Quadratic interpolation around index i. Returns (x_peak, y_peak)."""
    if i <= 0 or i >= y.size - 1:
        return float(i), float(y[i])
    y0, y1, y2 = float(y[i - 1]), float(y[i]), float(y[i + 1])
    denom = y0 - 2.0 * y1 + y2
    if denom >= 0.0:
        return float(i), y1
    dx = 0.5 * (y0 - y2) / denom
    return float(i + dx), float(y1 - 0.25 * (y0 - y2) * dx)


def autocorrelation(x: np.ndarray) -> np.ndarray:
    """Biased autocorrelation via FFT (Wiener-Khinchin), normalised by length.

    The implicit triangular taper makes r[k] shrink with lag, so the first
    period of a stationary tone outranks its multiples.
    """
    x = np.asarray(x, dtype=np.float64)
    n = x.size
    nfft = int(2 ** int(np.ceil(np.log2(2 * n - 1))))
    X = np.fft.rfft(x, n=nfft)
    acf = np.fft.irfft(np.abs(X) ** 2, n=nfft)[:n]
    return acf / n


def first_dominant_peak(roi: np.ndarray, fraction: float = 0.8) -> int:
    """Index of the first local maximum reaching ``fraction`` of the ROI maximum.

    Falls back to the global argmax when the ROI has no interior maximum.
    """
    if roi.size < 3:
        return int(np.argmax(roi))
    top = float(roi.max())
    inner = roi[1:-1]
    is_peak = (inner >= roi[:-2]) & (inner > roi[2:]) & (inner >= fraction * top)
    idx = np.flatnonzero(is_peak)
    if idx.size == 0:
        return int(np.argmax(roi))
    return int(idx[0]) + 1


def estimate_f0(x: np.ndarray, sample_rate: int, cfg: Optional[VoiceConfig] = None) -> Tuple[Optional[float], float]:
    """Fundamental frequency by the first dominant ACF peak in the pitch range.

    Returns:
        (f0_hz, confidence) where confidence is r[lag] / r[0]; f0 is None when
        no lag in range is available.
    """
    cfg = cfg or VoiceConfig()
    x = np.asarray(x, dtype=np.float64)
    if x.size < 8 or sample_rate <= 0:
        return None, 0.0
    xw = (x - x.mean()) * np.hamming(x.size)
    acf = autocorrelation(xw)
    if acf[0] <= 0:
        return None, 0.0
    lag_min = max(1, int(np.floor(sample_rate / cfg.f0_max)))
    lag_max = min(acf.size - 2, int(np.ceil(sample_rate / cfg.f0_min)))
    if lag_max - lag_min < 2:
        return None, 0.0
    k = first_dominant_peak(acf[lag_min : lag_max + 1]) + lag_min
    lag, peak = _parabolic(acf, k)
    if lag <= 0:
        return None, 0.0
    confidence = float(np.clip(peak / acf[0], 0.0, 1.0))
    return float(sample_rate / lag), confidence


def jitter(x: np.ndarray, sample_rate: int, f0: Optional[float]) -> Optional[float]:
    """Period perturbation (%) from cross-correlation aligned cycle lengths."""
    if not f0 or f0 <= 0:
        return None
    x = np.asarray(x, dtype=np.float64)
    period = int(round(sample_rate / f0))
    if period < 2 or period >= x.size / 3:
        return None
    slack = max(1, period // 4)
    lengths = []
    pos = 0
    while pos + 2 * period + slack <= x.size:
        ref = x[pos : pos + period]
        lo = pos + period - slack
        cands = sliding_window_view(x[lo : lo + period + 2 * slack], period)
        shift = int(np.argmax(cands @ ref)) - slack
        lengths.append(period + shift)
        pos += period + shift
    if len(lengths) < 2:
        return None
    L = np.asarray(lengths, dtype=np.float64)
    mean = float(L.mean())
    if mean <= 0:
        return None
    return float(np.mean(np.abs(L - mean)) / mean * 100.0)


def shimmer(x: np.ndarray, sample_rate: int, frame_s: float = 0.01) -> Optional[float]:
    """Amplitude perturbation (%) of per-frame peak amplitudes."""
    x = np.asarray(x, dtype=np.float64)
    size = int(frame_s * sample_rate)
    nframes = x.size // size if size > 0 else 0
    if nframes < 3:
        return None
    amps = np.max(np.abs(x[: nframes * size].reshape(nframes, size)), axis=1)
    mean = float(amps.mean())
    if mean <= 0:
        return None
    return float(np.mean(np.abs(amps - mean)) / mean * 100.0)


def hnr(
    x: np.ndarray,
    sample_rate: int,
    f0: Optional[float],
    cfg: Optional[VoiceConfig] = None,
) -> Optional[float]:
    """Harmonic-to-noise ratio in dB.

    With a pitch estimate, a comb of sines and cosines at the harmonics of f0
    is fitted by least squares over short frames and the residual is the
    noise. Without one, spectral peaks are compared to the remaining bins.
    """
    cfg = cfg or VoiceConfig()
    x = np.asarray(x, dtype=np.float64)
    if x.size < 8:
        return None
    if not f0 or f0 <= 0:
        return spectral_hnr(x, cfg.hnr_max)
    if sample_rate / f0 >= x.size / 2:
        return None
    nh = max(1, min(int(sample_rate / (2.0 * f0)), cfg.harmonics))
    size = min(x.size, max(int(0.1 * sample_rate), int(4 * sample_rate / f0)))
    n = np.arange(size, dtype=np.float64)
    h = np.arange(1, nh + 1, dtype=np.float64)
    phase = 2.0 * np.pi * f0 * np.outer(n, h) / sample_rate
    basis = np.hstack([np.sin(phase), np.cos(phase)])
    p_h = 0.0
    p_n = 0.0
    for start in range(0, x.size - size + 1, size):
        seg = x[start : start + size] - x[start : start + size].mean()
        coef, *_ = np.linalg.lstsq(basis, seg, rcond=None)
        harmonic = basis @ coef
        p_h += float(np.sum(harmonic**2))
        p_n += float(np.sum((seg - harmonic) ** 2))
    if p_h <= 0:
        return None
    if p_n <= 0:
        return float(cfg.hnr_max)
    return float(min(10.0 * np.log10(p_h / p_n), cfg.hnr_max))


def spectral_hnr(x: np.ndarray, hnr_max: float = 30.0) -> Optional[float]:
    mag = np.abs(np.fft.rfft(np.asarray(x, dtype=np.float64)))
    if mag.size < 3 or float(mag.max()) <= 0:
        return None
    inner = mag[1:-1]
    is_peak = (inner > mag[:-2]) & (inner > mag[2:]) & (inner > 0.1 * mag.max())
    peaks = np.zeros(mag.size, dtype=bool)
    peaks[1:-1] = is_peak
    if not np.any(peaks) or np.all(peaks):
        return None
    p_sig = float(np.mean(mag[peaks] ** 2))
    p_noise = float(np.mean(mag[~peaks] ** 2))
    if p_noise <= 0:
        return float(hnr_max)
    return float(np.clip(10.0 * np.log10(p_sig / p_noise), 0.0, hnr_max))


# ---------------------------------------------------------------------------
# Spectral features


def magnitude_spectrum(x: np.ndarray, sample_rate: int) -> Tuple[np.ndarray, np.ndarray]:
    x = np.asarray(x, dtype=np.float64)
    mag = np.abs(np.fft.rfft(x * np.hanning(x.size)))
    freqs = np.fft.rfftfreq(x.size, d=1.0 / sample_rate)
    return freqs, mag


def spectral_centroid(freqs: np.ndarray, mag: np.ndarray) -> Optional[float]:
    total = float(mag.sum())
    if total <= 0:
        return None
    return float(np.sum(freqs * mag) / total)


def spectral_rolloff(freqs: np.ndarray, mag: np.ndarray, fraction: float = 0.85) -> Optional[float]:
    total = float(mag.sum())
    if total <= 0:
        return None
    idx = int(np.searchsorted(np.cumsum(mag), fraction * total))
    return float(freqs[min(idx, freqs.size - 1)])


def spectral_flux(mag: np.ndarray, previous: Optional[np.ndarray]) -> float:
    """Mean positive magnitude change against the previous analysis; 0 at first."""
    if previous is None or previous.shape != mag.shape or mag.size == 0:
        return 0.0
    return float(np.sum(np.maximum(mag - previous, 0.0)) / mag.size)


def _hz_to_mel(f):
    return 2595.0 * np.log10(1.0 + np.asarray(f) / 700.0)


def _mel_to_hz(m):
    return 700.0 * (10.0 ** (np.asarray(m) / 2595.0) - 1.0)


def mel_filterbank(n_filters: int, freqs: np.ndarray, sample_rate: int) -> np.ndarray:
    """Triangular filters evenly spaced on the mel scale, shape (n_filters, bins)."""
    edges = _mel_to_hz(np.linspace(0.0, _hz_to_mel(sample_rate / 2.0), n_filters + 2))
    fb = np.zeros((n_filters, freqs.size))
    for i in range(n_filters):
        lo, mid, hi = edges[i], edges[i + 1], edges[i + 2]
        up = (freqs - lo) / max(mid - lo, 1e-9)
        down = (hi - freqs) / max(hi - mid, 1e-9)
        fb[i] = np.clip(np.minimum(up, down), 0.0, None)
    return fb


def mfcc(freqs: np.ndarray, mag: np.ndarray, sample_rate: int, n_filters: int = 26, keep: int = 5) -> Optional[Tuple[float, ...]]:
    if mag.size < 2 or float(mag.sum()) <= 0:
        return None
    energies = mel_filterbank(n_filters, freqs, sample_rate) @ (mag**2)
    coeffs = dct(np.log(energies + 1e-10), type=2, norm="ortho")
    return tuple(round(float(c), 4) for c in coeffs[:keep])


def band_share(values: np.ndarray, top_fraction: float) -> Optional[float]:
    """Share of the total held by the top ``top_fraction`` of bins."""
    total = float(values.sum())
    if total <= 0:
        return None
    start = int(values.size * (1.0 - top_fraction))
    return float(values[start:].sum() / total)


def spectral_tilt(mag: np.ndarray) -> Optional[float]:
    """(high 30% - low 30%) / low 30% of the magnitude spectrum."""
    k = int(mag.size * 0.3)
    if k < 1:
        return None
    low = float(mag[:k].sum())
    high = float(mag[-k:].sum())
    if low <= 0:
        return None
    return (high - low) / low


# ---------------------------------------------------------------------------
# Frame-level energy features


def frame_rms(x: np.ndarray, size: int, hop: Optional[int] = None) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    hop = hop or size
    if size < 1 or x.size < size:
        return np.zeros(0)
    frames = sliding_window_view(x, size)[::hop]
    return np.sqrt(np.mean(frames**2, axis=1))


def voiced_frame_ratio(x: np.ndarray, sample_rate: int, cfg: VoiceConfig) -> Optional[float]:
    size = int(cfg.frame_ms * 1e-3 * sample_rate)
    if size < 2 or x.size < size:
        return None
    frames = sliding_window_view(np.asarray(x, dtype=np.float64), size)[:: max(1, size // 2)]
    voiced = sum(1 for f in frames if detect_voice_activity(f, cfg).has_voice)
    return float(100.0 * voiced / len(frames))


def speech_rate(x: np.ndarray, sample_rate: int, cfg: VoiceConfig) -> Optional[float]:
    """Syllable-like energy onsets per second."""
    env = frame_rms(x, int(cfg.envelope_ms * 1e-3 * sample_rate))
    if env.size < 2 or float(env.max()) <= 0:
        return None
    above = env > 0.3 * float(env.max())
    onsets = int(np.count_nonzero(above[1:] & ~above[:-1]))
    return float(onsets / (x.size / float(sample_rate)))


def energy_variability(x: np.ndarray, sample_rate: int, cfg: VoiceConfig) -> Optional[float]:
    env = frame_rms(x, int(cfg.frame_ms * 1e-3 * sample_rate))
    if env.size < 2 or float(env.mean()) <= 0:
        return None
    return float(env.std() / env.mean())


def breathing(x: np.ndarray, sample_rate: int, cfg: VoiceConfig) -> Tuple[Optional[float], Optional[str]]:
    """Breathing rate (per minute) and regularity from the slow energy envelope."""
    frame_s = cfg.breathing_frame_ms * 1e-3
    env = frame_rms(x, int(frame_s * sample_rate))
    if env.size < 4 or float(env.mean()) <= 0:
        return None, None
    if float(env.std() / env.mean()) < cfg.breathing_min_modulation:
        # Steady phonation carries no breath modulation
        return None, None
    # First-order low-pass of the envelope, started at the first frame level
    alpha = cfg.breathing_cutoff_hz / (cfg.breathing_cutoff_hz + 1.0 / frame_s)
    b, a = [alpha], [1.0, alpha - 1.0]
    smooth, _ = lfilter(b, a, env, zi=lfilter_zi(b, a) * env[0])
    above = smooth > 0.5 * float(smooth.max())
    onsets = np.flatnonzero(above[1:] & ~above[:-1]) + 1
    if onsets.size == 0:
        return None, None
    rate = float(onsets.size / (env.size * frame_s / 60.0))
    pattern = None
    if onsets.size >= 3:
        iv = np.diff(onsets).astype(np.float64)
        cv = float(iv.std() / iv.mean())
        if cv < 0.2:
            pattern = "regular"
        elif cv < 0.4:
            pattern = "slightly_irregular"
        else:
            pattern = "irregular"
    return round(rate, 1), pattern


# ---------------------------------------------------------------------------
# Prosody scores


def vocal_stress(
    hf_energy: Optional[float],
    centroid: Optional[float],
    variability: Optional[float],
    f0_history: Tuple[float, ...],
) -> float:
    score = 0.0
    if hf_energy is not None and hf_energy > 0.3:
        score += 25.0
    if centroid is not None and centroid > 2000.0:
        score += 20.0
    if variability is not None and variability > 0.5:
        score += 15.0
    if len(f0_history) > 3 and float(np.std(f0_history)) > 20.0:
        score += 20.0
    return float(min(score, 100.0))


def valence(centroid: Optional[float], rolloff: Optional[float], variability: Optional[float]) -> float:
    score = 50.0
    if centroid is not None and centroid > 1500.0:
        score += 20.0
    if rolloff is not None and rolloff > 3000.0:
        score += 15.0
    if variability is not None and variability < 0.3:
        score += 15.0
    return float(min(score, 100.0))


def arousal(level: float, hf_energy: Optional[float], rate: Optional[float]) -> float:
    score = 50.0
    if level > 0.1:
        score += 25.0
    if hf_energy is not None and hf_energy > 0.4:
        score += 20.0
    if rate is not None and rate > 5.0:
        score += 15.0
    return float(min(score, 100.0))


def vocal_effort(level: float, f0: Optional[float], tilt: Optional[float]) -> float:
    score = 50.0
    if level > 0.2:
        score += 25.0
    if f0 is not None and f0 > 250.0:
        score += 20.0
    if tilt is not None and tilt > 0:
        score += 15.0
    return float(min(score, 100.0))


def _rounded(v: Optional[float], nd: int) -> Optional[float]:
    if v is None or not np.isfinite(v):
        return None
    return round(float(v), nd)


class VoiceAnalyzer:
    """Feature extraction over one analysis segment.

    Keeps the F0 history (median smoothing, pitch variability) and the last
    magnitude spectrum (flux) between calls.
    """

    def __init__(self, cfg: Optional[VoiceConfig] = None) -> None:
        self.cfg = cfg or VoiceConfig()
        self.f0_history: Deque[float] = deque(maxlen=self.cfg.f0_history)
        self._prev_mag: Optional[np.ndarray] = None

    def reset(self) -> None:
        self.f0_history.clear()
        self._prev_mag = None

    def _safe(self, name: str, fn: Callable[[], object]) -> object:
        try:
            return fn()
        except Exception:
            logger.exception("Voice feature %s failed", name)
            return None

    def analyze(self, x: np.ndarray, sample_rate: int) -> VoiceBiomarkerSet:
        cfg = self.cfg
        x = np.asarray(x, dtype=np.float64)
        vad = detect_voice_activity(x, cfg)
        if not vad.has_voice:
            logger.debug("No voice activity (rms=%.4f zcr=%.3f)", vad.energy, vad.zcr)
            return VoiceBiomarkerSet()

        out: Dict[str, object] = {}
        f0, conf = estimate_f0(x, sample_rate, cfg)
        if f0 is not None and conf > cfg.f0_min_confidence and cfg.f0_min <= f0 <= cfg.f0_max:
            self.f0_history.append(f0)
            out["f0"] = _rounded(float(np.median(self.f0_history)), 1)
            out["f0_confidence"] = _rounded(conf, 3)
        else:
            f0 = None

        out["jitter"] = self._safe("jitter", lambda: _rounded(jitter(x, sample_rate, f0), 3))
        out["shimmer"] = self._safe("shimmer", lambda: _rounded(shimmer(x, sample_rate), 3))
        out["hnr"] = self._safe("hnr", lambda: _rounded(hnr(x, sample_rate, f0, cfg), 2))

        freqs, mag = magnitude_spectrum(x, sample_rate)
        centroid = self._safe("spectral_centroid", lambda: spectral_centroid(freqs, mag))
        rolloff = self._safe("spectral_rolloff", lambda: spectral_rolloff(freqs, mag, cfg.rolloff))
        out["spectral_centroid"] = _rounded(centroid, 1)
        out["spectral_rolloff"] = _rounded(rolloff, 1)
        out["spectral_flux"] = self._safe("spectral_flux", lambda: _rounded(spectral_flux(mag, self._prev_mag), 5))
        self._prev_mag = mag
        out["mfcc"] = self._safe("mfcc", lambda: mfcc(freqs, mag, sample_rate, cfg.mel_filters, cfg.mfcc_keep))

        level = vad.energy
        hf = self._safe("hf_energy", lambda: band_share(mag**2, 0.3))
        variability = self._safe("energy_variability", lambda: energy_variability(x, sample_rate, cfg))
        rate = self._safe("speech_rate", lambda: speech_rate(x, sample_rate, cfg))
        out["voiced_frame_ratio"] = self._safe(
            "voiced_frame_ratio", lambda: _rounded(voiced_frame_ratio(x, sample_rate, cfg), 1)
        )
        out["speech_rate"] = _rounded(rate, 2)
        out["vocal_effort"] = self._safe(
            "vocal_effort", lambda: vocal_effort(level, f0, spectral_tilt(mag))
        )
        out["breathiness"] = self._safe(
            "breathiness", lambda: _rounded(_percent(band_share(mag, 0.2)), 1)
        )
        out["vocal_stress"] = self._safe(
            "vocal_stress", lambda: vocal_stress(hf, centroid, variability, tuple(self.f0_history))
        )
        out["valence"] = self._safe("valence", lambda: valence(centroid, rolloff, variability))
        out["arousal"] = self._safe("arousal", lambda: arousal(level, hf, rate))
        br = self._safe("breathing", lambda: breathing(x, sample_rate, cfg))
        if br is not None:
            out["breathing_rate"], out["breathing_pattern"] = br
        return VoiceBiomarkerSet(**out)


def _percent(v: Optional[float]) -> Optional[float]:
    return None if v is None else 100.0 * v


@dataclass
class VoiceUpdate:
    biomarkers: VoiceBiomarkerSet
    levels: AudioLevels
    has_voice: bool


class VoiceBiomarkerEngine:
    """Buffer incoming audio frames and analyze them on a fixed cadence."""

    def __init__(self, cfg: Optional[VoiceConfig] = None) -> None:
        self.cfg = cfg or VoiceConfig()
        self.analyzer = VoiceAnalyzer(self.cfg)
        self.buffer: Optional[AudioBuffer] = None
        self.latest = VoiceBiomarkerSet()
        self.levels: Optional[AudioLevels] = None

    def reset(self) -> None:
        self.analyzer.reset()
        if self.buffer is not None:
            self.buffer.clear()
        self.latest = VoiceBiomarkerSet()
        self.levels = None

    def push(self, frame: VoiceFrame) -> Optional[VoiceUpdate]:
        """Buffer a block; analyze when due.

        Returns:
            VoiceUpdate when an analysis ran, else None.
        """
        if self.buffer is None or self.buffer.sample_rate != int(frame.sample_rate):
            if self.buffer is not None:
                logger.info("Audio sample rate changed to %d Hz; resetting buffer", frame.sample_rate)
            self.buffer = AudioBuffer(frame.sample_rate, self.cfg)
            self.analyzer.reset()
        self.buffer.append(frame.samples)
        if not self.buffer.due(frame.timestamp):
            return None
        self.buffer.mark(frame.timestamp)
        segment = self.buffer.latest(self.cfg.analysis_seconds)
        self.levels = audio_levels(segment)
        result = self.analyzer.analyze(segment, self.buffer.sample_rate)
        self.latest = result
        return VoiceUpdate(result, self.levels, not result.is_empty())

"""Session controller: drives the per-tick pipeline and emits snapshots.

One tick is: extract a channel sample from the frame, append it to the signal
window, and every ``evaluation_interval`` frames condition the window, analyze
its spectrum, validate the heart rate and (when validated) update HRV and the
derived vitals. Audio blocks are processed independently and the latest voice
biomarkers are merged into every snapshot.

All mutable state lives in ``SessionState``; the controller holds no other
per-session data and starts no threads.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from queue import Empty, Full, Queue
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Union

import numpy as np

from .bpm import FrequencyAnalyzer
from .config import SessionConfig
from .diagnostics import DiagnosticTrace
from .errors import DeviceUnavailable
from .hrv import HrvEngine, RRSynthesizer
from .models import (
    AnalysisReason,
    BiomarkerSnapshot,
    ChannelSample,
    DerivedVitals,
    FrequencyPeak,
    Frame,
    HRVMetricSet,
    SessionStatus,
    VoiceBiomarkerSet,
    VoiceFrame,
)
from .preprocess import SignalConditioner, SignalWindow
from .roi import Locator, RegionExtractor
from .tracker import TemporalValidator
from .vad import AudioLevels
from .vitals import VitalsConfig, VitalsEstimator
from .voice import VoiceBiomarkerEngine, VoiceUpdate

logger = logging.getLogger(__name__)

_TERMINAL = (SessionStatus.STOPPED, SessionStatus.FAILED)


class SnapshotObserver(Protocol):
    def on_snapshot(self, snapshot: BiomarkerSnapshot) -> None: ...

    def on_status(self, status: SessionStatus, detail: Optional[str] = None) -> None: ...


class FrameSource(Protocol):
    def next_frame(self) -> Optional[Frame]: ...


class AudioSource(Protocol):
    def next_block(self) -> Optional[VoiceFrame]: ...


class SnapshotChannel:
    """Single-slot mailbox between the controller and a slow consumer.

    While a snapshot is pending, newer ones are dropped and counted.
    """

    def __init__(self) -> None:
        self._slot: "Queue[BiomarkerSnapshot]" = Queue(maxsize=1)
        self.dropped = 0
        self.status: Optional[SessionStatus] = None

    def on_snapshot(self, snapshot: BiomarkerSnapshot) -> None:
        try:
            self._slot.put_nowait(snapshot)
        except Full:
            self.dropped += 1

    def on_status(self, status: SessionStatus, detail: Optional[str] = None) -> None:
        self.status = status

    def take(self) -> Optional[BiomarkerSnapshot]:
        try:
            return self._slot.get_nowait()
        except Empty:
            return None


def quality_score(n_rppg: int, n_voice: int) -> float:
    """Completeness score weighting rPPG 0.6 and voice 0.4."""
    return round(min(1.0, n_rppg / 15.0) * 0.6 + min(1.0, n_voice / 8.0) * 0.4, 3)


@dataclass
class SessionState:
    window: SignalWindow
    validator: TemporalValidator
    rr: RRSynthesizer
    voice: VoiceBiomarkerEngine
    trace: DiagnosticTrace
    qualities: Deque[float]
    status: SessionStatus = SessionStatus.ACCUMULATING
    stop_requested: bool = False
    frame_number: int = 0
    rejected_frames: int = 0
    fs: float = 30.0
    last_sample: Optional[ChannelSample] = None
    last_peak: Optional[FrequencyPeak] = None
    last_reason: Optional[AnalysisReason] = None
    heart_rate: Optional[int] = None
    hrv: HRVMetricSet = field(default_factory=HRVMetricSet)
    vitals: DerivedVitals = field(default_factory=DerivedVitals)
    voice_metrics: VoiceBiomarkerSet = field(default_factory=VoiceBiomarkerSet)
    audio_levels: Optional[AudioLevels] = None
    last_snapshot: Optional[BiomarkerSnapshot] = None
    error: Optional[Dict[str, Any]] = None


class SessionController:
    def __init__(
        self,
        cfg: Optional[SessionConfig] = None,
        observers: Optional[List[SnapshotObserver]] = None,
        locator: Optional[Locator] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        self.cfg = cfg or SessionConfig()
        self.observers: List[SnapshotObserver] = list(observers or [])
        self._rng = rng
        cfg = self.cfg
        self.extractor = RegionExtractor(cfg.region, locator=locator)
        self.conditioner = SignalConditioner(cfg.conditioner)
        self.analyzer = FrequencyAnalyzer(cfg.analyzer)
        self.hrv_engine = HrvEngine(cfg.hrv)
        self.vitals = VitalsEstimator(
            VitalsConfig(
                spo2=cfg.spo2,
                blood_pressure=cfg.blood_pressure,
                respiration=cfg.respiration,
                perfusion=cfg.perfusion,
                stress=cfg.stress,
            )
        )
        self.state = self._new_state()

    def _new_state(self) -> SessionState:
        cfg = self.cfg
        return SessionState(
            window=self.conditioner.new_window(),
            validator=TemporalValidator(cfg.validator),
            rr=RRSynthesizer(cfg.hrv, rng=self._rng),
            voice=VoiceBiomarkerEngine(cfg.voice),
            trace=DiagnosticTrace(cfg.trace_size),
            qualities=deque(maxlen=cfg.conditioner.analysis_window),
            fs=cfg.conditioner.nominal_fs,
        )

    # ------------------------------------------------------------------
    # Observers and status

    @property
    def status(self) -> SessionStatus:
        return self.state.status

    @property
    def trace(self) -> DiagnosticTrace:
        return self.state.trace

    def add_observer(self, observer: SnapshotObserver) -> None:
        self.observers.append(observer)

    def remove_observer(self, observer: SnapshotObserver) -> None:
        if observer in self.observers:
            self.observers.remove(observer)

    def _set_status(self, status: SessionStatus, detail: Optional[str] = None) -> None:
        st = self.state
        if status == st.status:
            return
        if st.status in _TERMINAL:
            return
        if st.stop_requested and status not in _TERMINAL:
            return
        logger.info("Session status %s -> %s", st.status.value, status.value)
        st.status = status
        st.trace.record("session", "status", status.value)
        for obs in list(self.observers):
            try:
                obs.on_status(status, detail)
            except Exception:
                logger.exception("Observer failed in on_status")

    def _emit(self, snapshot: BiomarkerSnapshot) -> None:
        self.state.last_snapshot = snapshot
        for obs in list(self.observers):
            try:
                obs.on_snapshot(snapshot)
            except Exception:
                logger.exception("Observer failed in on_snapshot")

    def _safe(self, name: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except Exception:
            logger.exception("Pipeline step %s failed", name)
            self.state.trace.record("session", name, "failed")
            return None

    # ------------------------------------------------------------------
    # Inputs

    def push_sample(self, sample: ChannelSample) -> bool:
        """Append an already extracted sample; False when rejected by quality."""
        st = self.state
        if sample.quality < self.cfg.quality_threshold:
            st.rejected_frames += 1
            st.trace.record("rppg", "extract", "rejected", {"quality": sample.quality})
            return False
        self.conditioner.push(st.window, sample)
        st.qualities.append(sample.quality)
        st.last_sample = sample
        return True

    def process_sample(self, sample: Optional[ChannelSample]) -> Optional[BiomarkerSnapshot]:
        """Count one frame worth of input; evaluates when it closes a cycle."""
        st = self.state
        if st.stop_requested:
            return None
        st.frame_number += 1
        if sample is None:
            st.rejected_frames += 1
            st.trace.record("rppg", "extract", "no skin region")
        else:
            self.push_sample(sample)
        if st.frame_number % self.cfg.evaluation_interval == 0:
            return self.evaluate()
        return None

    def process_frame(
        self, frame: Union[Frame, np.ndarray], timestamp: Optional[float] = None
    ) -> Optional[BiomarkerSnapshot]:
        """Ingest one frame; returns the snapshot when this frame closes a cycle."""
        if self.state.stop_requested:
            return None
        if timestamp is None:
            timestamp = frame.timestamp if isinstance(frame, Frame) else time.perf_counter()
        return self.process_sample(self.extractor.extract(frame, timestamp))

    def process_audio(self, block: VoiceFrame) -> Optional[VoiceUpdate]:
        st = self.state
        if st.stop_requested:
            return None
        update = self._safe("voice", lambda: st.voice.push(block))
        if update is None:
            return None
        st.voice_metrics = update.biomarkers
        st.audio_levels = update.levels
        st.trace.record(
            "voice",
            "analyze",
            "voiced" if update.has_voice else "silence",
            {"rms": update.levels.rms, "snr_db": update.levels.snr_db, "f0": update.biomarkers.f0},
            timestamp=block.timestamp,
        )
        return update

    # ------------------------------------------------------------------
    # Evaluation cycle

    def evaluate(self) -> Optional[BiomarkerSnapshot]:
        """Run one evaluation cycle and emit its snapshot.

        A stop raised while the cycle runs lets it finish (and emit); every
        later call returns None.
        """
        st = self.state
        if st.stop_requested:
            return None
        quality = float(np.mean(st.qualities)) if st.qualities else 0.0
        cond = self.conditioner.condition(st.window, quality=quality)
        st.fs = cond.fs
        st.trace.record(
            "rppg",
            "condition",
            cond.status.value,
            {"buffer": cond.buffer_length, "fs": cond.fs, "quality": quality},
        )
        if cond.status == SessionStatus.ACCUMULATING:
            self._set_status(SessionStatus.ACCUMULATING)
        else:
            self._analyze(cond.filtered, cond.fs, quality)
        snapshot = self.snapshot()
        self._emit(snapshot)
        return snapshot

    def _analyze(self, filtered: Optional[np.ndarray], fs: float, quality: float) -> None:
        st = self.state
        ts = st.last_sample.timestamp if st.last_sample is not None else 0.0
        result = self._safe("frequency", lambda: self.analyzer.analyze(filtered, fs, quality, ts))
        if result is None:
            return
        st.last_peak = result.peak
        st.last_reason = result.reason
        peak = result.peak
        st.trace.record(
            "rppg",
            "frequency",
            result.reason.value,
            {
                "freq_hz": peak.frequency_hz if peak else None,
                "snr": peak.snr if peak else None,
                "harmonic": peak.harmonic_confidence if peak else None,
            },
        )
        if result.estimate is None:
            if st.heart_rate is None:
                self._set_status(SessionStatus.READY)
            return
        validated = st.validator.update(result.estimate)
        st.heart_rate = validated.bpm
        st.trace.record(
            "rppg",
            "validate",
            validated.method,
            {"raw_bpm": result.estimate.bpm, "bpm": validated.bpm, "clamped": validated.clamped},
        )
        st.rr.push(validated.bpm)
        hrv = self._safe("hrv", lambda: self.hrv_engine.compute(st.rr.series()))
        if hrv is not None:
            st.hrv = hrv
        vitals = self._safe(
            "vitals",
            lambda: self.vitals.estimate(
                st.last_sample,
                filtered,
                st.window.values(),
                fs,
                quality,
                st.heart_rate,
                st.hrv,
                st.voice_metrics.vocal_stress,
            ),
        )
        if vitals is not None:
            st.vitals = vitals
        st.trace.record("rppg", "vitals", "updated", {"intervals": len(st.rr), "quality": result.estimate.quality})
        self._set_status(SessionStatus.ANALYZING)

    def snapshot(self) -> BiomarkerSnapshot:
        """Merge the latest metrics into a snapshot without emitting it."""
        st = self.state
        rppg: Dict[str, Any] = {}
        if st.heart_rate is not None:
            rppg["heart_rate"] = st.heart_rate
        rppg.update(st.hrv.to_dict())
        rppg.update(st.vitals.to_dict())
        voice = st.voice_metrics.to_dict()
        extras: Dict[str, Any] = {"fs": round(st.fs, 2), "rejected_frames": st.rejected_frames}
        if st.last_peak is not None:
            extras["snr"] = round(st.last_peak.snr, 2)
        if st.last_reason is not None:
            extras["reason"] = st.last_reason.value
        if st.audio_levels is not None:
            extras["audio_quality"] = st.audio_levels.grade
        return BiomarkerSnapshot(
            rppg=rppg,
            voice=voice,
            calculated_count=len(rppg) + len(voice),
            quality_score=quality_score(len(rppg), len(voice)),
            timestamp=time.time(),
            frame_number=st.frame_number,
            heart_rate=st.heart_rate,
            status=st.status,
            extras=extras,
        )

    # ------------------------------------------------------------------
    # Lifecycle

    def stop(self) -> None:
        """Request a stop; a cycle in progress completes, later ticks are no-ops."""
        if self.state.stop_requested:
            return
        self.state.stop_requested = True
        self._set_status(SessionStatus.STOPPED)

    def reset(self) -> None:
        """Drop all buffered data and start a fresh session with the same observers."""
        self.state = self._new_state()
        for obs in list(self.observers):
            try:
                obs.on_status(SessionStatus.ACCUMULATING, "reset")
            except Exception:
                logger.exception("Observer failed in on_status")

    def run(
        self,
        frame_source: FrameSource,
        audio_source: Optional[AudioSource] = None,
        max_frames: Optional[int] = None,
    ) -> int:
        """Pull frames (and audio) until the source ends, ``max_frames`` or stop().

        Returns the number of frames processed. A ``DeviceUnavailable`` from
        either source moves the session to ``failed``; it is not retried.
        """
        count = 0
        try:
            while not self.state.stop_requested:
                if max_frames is not None and count >= max_frames:
                    break
                if audio_source is not None:
                    block = audio_source.next_block()
                    if block is not None:
                        self.process_audio(block)
                frame = frame_source.next_frame()
                if frame is None:
                    logger.info("Frame source exhausted after %d frames", count)
                    break
                self.process_frame(frame)
                count += 1
        except DeviceUnavailable as exc:
            logger.error("Device unavailable: %s", exc)
            self.state.error = exc.to_dict()
            self._set_status(SessionStatus.FAILED, str(exc))
            return count
        self.stop()
        return count

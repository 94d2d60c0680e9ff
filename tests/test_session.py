from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np

from vitalsense.capture import ArrayFrameSource
from vitalsense.config import SessionConfig
from vitalsense.errors import DeviceUnavailable
from vitalsense.models import BiomarkerSnapshot, ChannelSample, SessionStatus, VoiceFrame
from vitalsense.session import SessionController, SnapshotChannel, quality_score

BLUE = (30.0, 80.0, 200.0)


class Collector:
    def __init__(self) -> None:
        self.snapshots: List[BiomarkerSnapshot] = []
        self.statuses: List[Tuple[SessionStatus, Optional[str]]] = []

    def on_snapshot(self, snapshot: BiomarkerSnapshot) -> None:
        self.snapshots.append(snapshot)

    def on_status(self, status: SessionStatus, detail: Optional[str] = None) -> None:
        self.statuses.append((status, detail))


def _controller(obs: Collector) -> SessionController:
    return SessionController(SessionConfig(), observers=[obs], rng=np.random.default_rng(0))


def test_quality_score_weights() -> None:
    assert quality_score(3, 2) == 0.22
    assert quality_score(15, 8) == 1.0
    assert quality_score(0, 0) == 0.0


def test_snapshot_channel_keeps_one_and_counts_drops() -> None:
    ch = SnapshotChannel()
    a = BiomarkerSnapshot({}, {}, 0, 0.0, 0.0, 1)
    b = BiomarkerSnapshot({}, {}, 0, 0.0, 0.0, 2)
    ch.on_snapshot(a)
    ch.on_snapshot(b)
    assert ch.dropped == 1
    assert ch.take() is a
    assert ch.take() is None


def test_session_accumulates_then_reports_heart_rate(pulse_frames) -> None:
    obs = Collector()
    ctl = _controller(obs)
    n = ctl.run(ArrayFrameSource(pulse_frames(300)), max_frames=300)
    assert n == 300
    # One snapshot per evaluation cycle
    assert len(obs.snapshots) == 300
    assert obs.snapshots[0].status == SessionStatus.ACCUMULATING
    assert obs.snapshots[0].heart_rate is None
    analyzing = [s for s in obs.snapshots if s.status == SessionStatus.ANALYZING]
    assert analyzing
    last = analyzing[-1]
    assert last.heart_rate is not None
    assert 66 <= last.heart_rate <= 78
    assert last.rppg["heart_rate"] == last.heart_rate
    assert "spo2" in last.rppg
    assert "blood_pressure" in last.rppg
    assert "rmssd" in last.rppg
    assert last.calculated_count == len(last.rppg) + len(last.voice)
    # run() ends with a stop
    assert ctl.status == SessionStatus.STOPPED
    assert obs.statuses[-1][0] == SessionStatus.STOPPED


def test_heart_rate_steps_are_bounded(pulse_frames) -> None:
    obs = Collector()
    ctl = _controller(obs)
    ctl.run(ArrayFrameSource(pulse_frames(300)))
    rates = [s.heart_rate for s in obs.snapshots if s.heart_rate is not None]
    assert rates
    assert max(abs(a - b) for a, b in zip(rates[1:], rates[:-1])) <= 15


def test_frames_without_skin_are_rejected() -> None:
    obs = Collector()
    ctl = _controller(obs)
    blue = np.tile(np.array(BLUE, dtype=np.float32), (40, 40, 1))
    for i in range(10):
        ctl.process_frame(blue, timestamp=i / 30.0)
    assert ctl.state.rejected_frames == 10
    assert len(ctl.state.window) == 0
    assert ctl.status == SessionStatus.ACCUMULATING
    assert obs.snapshots[-1].extras["rejected_frames"] == 10


def test_low_quality_samples_are_not_buffered() -> None:
    ctl = SessionController()
    ok = ctl.push_sample(ChannelSample(200.0, 150.0, 120.0, quality=0.1, timestamp=0.0))
    assert not ok
    assert len(ctl.state.window) == 0
    assert ctl.push_sample(ChannelSample(200.0, 150.0, 120.0, quality=0.9, timestamp=0.0))


def test_evaluation_interval_controls_snapshot_rate(pulse_frames) -> None:
    obs = Collector()
    cfg = SessionConfig(evaluation_interval=10)
    ctl = SessionController(cfg, observers=[obs])
    ctl.run(ArrayFrameSource(pulse_frames(50)))
    assert [s.frame_number for s in obs.snapshots] == [10, 20, 30, 40, 50]


def test_stop_during_cycle_finishes_it_then_ignores_input(pulse_frames) -> None:
    obs = Collector()
    ctl = _controller(obs)
    compute = ctl.hrv_engine.compute

    def stop_then_compute(rr):
        ctl.stop()
        return compute(rr)

    ctl.hrv_engine.compute = stop_then_compute
    frames = list(pulse_frames(300))
    for i, f in enumerate(frames):
        ctl.process_frame(f, timestamp=i / 30.0)
        if ctl.state.stop_requested:
            break
    assert ctl.status == SessionStatus.STOPPED
    stopped_at = ctl.state.frame_number
    emitted = len(obs.snapshots)
    # The interrupted cycle still emitted its snapshot
    assert obs.snapshots[-1].frame_number == stopped_at
    assert obs.snapshots[-1].heart_rate is not None
    assert ctl.process_frame(frames[-1], timestamp=99.0) is None
    assert ctl.evaluate() is None
    assert len(obs.snapshots) == emitted
    assert ctl.state.frame_number == stopped_at
    assert [s for s, _ in obs.statuses].count(SessionStatus.STOPPED) == 1


def test_device_failure_moves_to_failed() -> None:
    class Broken:
        def next_frame(self):
            raise DeviceUnavailable("camera unplugged", source="cam0")

    obs = Collector()
    ctl = _controller(obs)
    assert ctl.run(Broken()) == 0
    assert ctl.status == SessionStatus.FAILED
    assert ctl.state.error["error"] == "DEVICE_UNAVAILABLE"
    assert ctl.state.error["details"]["source"] == "cam0"
    assert obs.statuses[-1] == (SessionStatus.FAILED, "camera unplugged")
    # Terminal: stop() does not overwrite it
    ctl.stop()
    assert ctl.status == SessionStatus.FAILED


def test_silent_audio_leaves_voice_empty(pulse_frames) -> None:
    obs = Collector()
    ctl = _controller(obs)
    for i, f in enumerate(pulse_frames(200)):
        ctl.process_frame(f, timestamp=i / 30.0)
    assert ctl.status == SessionStatus.ANALYZING
    updates = []
    for k in range(30):
        block = VoiceFrame(samples=np.zeros(1600, dtype=np.float32), sample_rate=16000, timestamp=k * 0.1)
        u = ctl.process_audio(block)
        if u is not None:
            updates.append(u)
    assert updates
    assert not any(u.has_voice for u in updates)
    snap = ctl.evaluate()
    assert snap is not None
    assert snap.voice == {}
    assert snap.extras["audio_quality"] == "poor"
    assert ctl.status == SessionStatus.ANALYZING


def test_voiced_audio_is_merged_into_snapshot() -> None:
    ctl = SessionController()
    t = np.arange(1600) / 16000.0
    tone = (0.5 * np.sin(2 * np.pi * 150.0 * t)).astype(np.float32)
    for k in range(10):
        ctl.process_audio(VoiceFrame(samples=tone, sample_rate=16000, timestamp=k * 0.1))
    snap = ctl.snapshot()
    assert snap.voice.get("f0") is not None
    assert abs(snap.voice["f0"] - 150.0) < 5.0
    assert snap.calculated_count == len(snap.voice)
    assert any(e.category == "voice" for e in ctl.trace.events())


def test_reset_starts_fresh_session(pulse_frames) -> None:
    obs = Collector()
    ctl = _controller(obs)
    for i, f in enumerate(pulse_frames(150)):
        ctl.process_frame(f, timestamp=i / 30.0)
    ctl.reset()
    assert ctl.status == SessionStatus.ACCUMULATING
    assert ctl.state.frame_number == 0
    assert len(ctl.state.window) == 0
    assert ctl.state.heart_rate is None
    assert obs.statuses[-1] == (SessionStatus.ACCUMULATING, "reset")


def test_failing_observer_does_not_break_session(pulse_frames) -> None:
    class Bad:
        def on_snapshot(self, snapshot):
            raise RuntimeError("observer bug")

        def on_status(self, status, detail=None):
            raise RuntimeError("observer bug")

    obs = Collector()
    ctl = SessionController(observers=[Bad(), obs])
    for i, f in enumerate(pulse_frames(130)):
        ctl.process_frame(f, timestamp=i / 30.0)
    assert len(obs.snapshots) == 130


def test_trace_is_bounded(pulse_frames) -> None:
    ctl = SessionController(SessionConfig(trace_size=100))
    for i, f in enumerate(pulse_frames(150)):
        ctl.process_frame(f, timestamp=i / 30.0)
    assert 0 < len(ctl.trace) <= 100

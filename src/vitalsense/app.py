"""Command-line runner: camera or video file in, biomarker snapshots out.

Run with: `vitalsense --source 0` (camera index) or `vitalsense --source clip.mp4
--wav clip.wav --out-dir runs/`. `vitalsense serve` starts the HTTP service.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from .capture import CameraSource, CaptureConfig, MicrophoneSource, WavAudioSource
from .config import load_config
from .errors import VitalsenseError
from .logsetup import setup_logging
from .models import BiomarkerSnapshot, SessionStatus
from .recorder import RecorderConfig, SnapshotRecorder
from .roi import FaceCascadeLocator, FaceLocatorConfig, MediaPipeFaceLocator
from .session import SessionController

logger = logging.getLogger(__name__)


class ConsolePrinter:
    """Print one line per snapshot (every ``every``-th one)."""

    def __init__(self, every: int = 30) -> None:
        self.every = max(1, int(every))
        self._count = 0

    def on_snapshot(self, snapshot: BiomarkerSnapshot) -> None:
        self._count += 1
        if self._count % self.every:
            return
        r = snapshot.rppg
        print(
            f"frame={snapshot.frame_number} status={snapshot.status.value} "
            f"hr={snapshot.heart_rate} rmssd={r.get('rmssd')} spo2={r.get('spo2')} "
            f"bp={r.get('blood_pressure')} f0={snapshot.voice.get('f0')} "
            f"quality={snapshot.quality_score:.2f}"
        )

    def on_status(self, status: SessionStatus, detail: Optional[str] = None) -> None:
        suffix = f" ({detail})" if detail else ""
        print(f"status: {status.value}{suffix}")


def _source(value: str):
    return int(value) if value.isdigit() else value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vitalsense", description="Camera/voice biomarker session runner.")
    parser.add_argument("--source", type=_source, default=0, help="camera index or video file path")
    parser.add_argument("--wav", type=Path, default=None, help="WAV file played alongside the video")
    parser.add_argument("--mic", action="store_true", help="capture audio from the default microphone")
    parser.add_argument("--max-frames", type=int, default=None)
    parser.add_argument("--out-dir", type=Path, default=None, help="write snapshots CSV/JSON here")
    parser.add_argument("--config", type=Path, default=None, help="JSON config file")
    parser.add_argument("--face", choices=("none", "cascade", "mediapipe"), default="none")
    parser.add_argument("--print-every", type=int, default=30)
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-file", type=Path, default=None)
    sub = parser.add_subparsers(dest="command")
    serve = sub.add_parser("serve", help="run the HTTP/WebSocket service")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def run_session(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    locator = None
    if args.face == "cascade":
        locator = FaceCascadeLocator(FaceLocatorConfig())
    elif args.face == "mediapipe":
        locator = MediaPipeFaceLocator(FaceLocatorConfig())

    observers: List = [ConsolePrinter(args.print_every)]
    recorder: Optional[SnapshotRecorder] = None
    if args.out_dir is not None:
        recorder = SnapshotRecorder(RecorderConfig(out_dir=args.out_dir))
        recorder.open()
        observers.append(recorder)

    controller = SessionController(cfg, observers=observers, locator=locator)
    frames = CameraSource(CaptureConfig(device=args.source, fps=int(cfg.conditioner.nominal_fs)))
    audio = None
    n = 0
    try:
        # Sources open on first read, so device errors surface inside run()
        if args.wav is not None:
            audio = WavAudioSource(args.wav, block_seconds=1.0 / cfg.conditioner.nominal_fs)
        elif args.mic:
            audio = MicrophoneSource()
        n = controller.run(frames, audio_source=audio, max_frames=args.max_frames)
    except KeyboardInterrupt:
        controller.stop()
        n = controller.state.frame_number
    finally:
        frames.release()
        if isinstance(audio, MicrophoneSource):
            audio.close()
        logger.info("Processed %d frames, final status %s", n, controller.status.value)
        if recorder is not None:
            last = controller.state.last_snapshot
            recorder.close(
                meta={
                    "source": str(args.source),
                    "audio": str(args.wav) if args.wav is not None else ("microphone" if args.mic else None),
                    "frames": n,
                    "final_status": controller.status.value,
                    "last_snapshot": last.to_dict() if last is not None else None,
                    "trace": controller.trace.export(),
                }
            )
    if controller.state.error is not None:
        print(json.dumps(controller.state.error), file=sys.stderr)
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, log_file=args.log_file)
    if args.command == "serve":
        from .service import main as serve_main

        serve_main(host=args.host, port=args.port, cfg=load_config(args.config))
        return 0
    try:
        return run_session(args)
    except VitalsenseError as exc:
        logger.error("%s", exc)
        print(json.dumps(exc.to_dict()), file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import json

from vitalsense.app import build_parser, main


def test_parser_defaults_and_source_parsing() -> None:
    args = build_parser().parse_args(["--source", "1", "--face", "cascade"])
    assert args.source == 1
    assert args.face == "cascade"
    assert args.command is None
    args = build_parser().parse_args(["--source", "clip.mp4", "serve", "--port", "9000"])
    assert args.source == "clip.mp4"
    assert args.command == "serve"
    assert args.port == 9000


def test_missing_video_fails_with_error_report(tmp_path, capsys, restore_logging) -> None:
    out_dir = tmp_path / "run"
    code = main(
        [
            "--source",
            str(tmp_path / "missing.mp4"),
            "--max-frames",
            "5",
            "--out-dir",
            str(out_dir),
            "--log-level",
            "WARNING",
        ]
    )
    assert code == 1
    err = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert err["error"] == "DEVICE_UNAVAILABLE"
    meta = json.loads((out_dir / "session.json").read_text())
    assert meta["final_status"] == "failed"
    assert meta["frames"] == 0


def test_bad_config_exits_with_code_2(tmp_path, capsys, restore_logging) -> None:
    cfg = tmp_path / "cfg.json"
    cfg.write_text(json.dumps({"no_such_key": 1}))
    assert main(["--config", str(cfg), "--log-level", "ERROR"]) == 2
    err = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert err["error"] == "CONFIGURATION_ERROR"


def test_missing_wav_fails_session_and_closes_recorder(tmp_path, capsys, restore_logging) -> None:
    out_dir = tmp_path / "run"
    code = main(
        [
            "--source",
            str(tmp_path / "missing.mp4"),
            "--wav",
            str(tmp_path / "missing.wav"),
            "--out-dir",
            str(out_dir),
            "--log-level",
            "ERROR",
        ]
    )
    assert code == 1
    err = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert err["error"] == "DEVICE_UNAVAILABLE"
    assert err["details"]["source"].endswith("missing.wav")
    meta = json.loads((out_dir / "session.json").read_text())
    assert meta["final_status"] == "failed"
    assert meta["audio"].endswith("missing.wav")
    assert (out_dir / "session.csv").read_text().startswith("timestamp,")

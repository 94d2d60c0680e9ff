from __future__ import annotations

import csv
import json
import threading
import time
from pathlib import Path
from tempfile import TemporaryDirectory

from vitalsense.models import BiomarkerSnapshot, SessionStatus
from vitalsense.recorder import SNAPSHOT_COLUMNS, RecorderConfig, SnapshotRecorder, snapshot_row


def _snapshot(frame: int) -> BiomarkerSnapshot:
    return BiomarkerSnapshot(
        rppg={"heart_rate": 72, "rmssd": 31.5, "spo2": 97, "blood_pressure": "121/81"},
        voice={"f0": 140.2},
        calculated_count=5,
        quality_score=0.22,
        timestamp=frame / 30.0,
        frame_number=frame,
        heart_rate=72,
        status=SessionStatus.ANALYZING,
    )


def test_snapshot_row_fills_missing_columns() -> None:
    row = dict(zip(SNAPSHOT_COLUMNS, snapshot_row(_snapshot(30))))
    assert row["frame_number"] == 30
    assert row["status"] == "analyzing"
    assert row["blood_pressure"] == "121/81"
    assert row["f0"] == 140.2
    assert row["jitter"] == ""


def test_recorder_writes_csv_and_meta() -> None:
    with TemporaryDirectory() as td:
        out = Path(td)
        rec = SnapshotRecorder(RecorderConfig(out_dir=out, base_name="test"))
        rec.open()
        rec.on_status(SessionStatus.ANALYZING)
        rec.on_snapshot(_snapshot(1))
        rec.on_snapshot(_snapshot(2))
        rec.close(meta={"k": "v"})

        csv_path = out / "test.csv"
        meta_path = out / "test.json"
        assert csv_path.exists()
        assert meta_path.exists()
        with csv_path.open(newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))
        assert tuple(rows[0]) == SNAPSHOT_COLUMNS
        assert [r[1] for r in rows[1:]] == ["1", "2"]
        meta = json.loads(meta_path.read_text())
        assert meta["k"] == "v"
        assert meta["rows_written"] == 2
        assert meta["statuses"] == [{"status": "analyzing", "detail": None}]


def test_recorder_counts_drops_when_queue_is_full() -> None:
    with TemporaryDirectory() as td:
        rec = SnapshotRecorder(RecorderConfig(out_dir=Path(td), max_pending=1))
        # Writer not started: the single slot fills up
        rec._writer = object()
        rec.on_snapshot(_snapshot(1))
        rec.on_snapshot(_snapshot(2))
        assert rec.dropped == 1


def test_close_returns_when_writer_stalls() -> None:
    release = threading.Event()
    with TemporaryDirectory() as td:
        rec = SnapshotRecorder(RecorderConfig(out_dir=Path(td), max_pending=1, close_timeout=0.2))
        rec.open()
        rec._write = lambda row: release.wait(5.0)  # type: ignore[method-assign]
        for i in range(1, 6):
            rec.on_snapshot(_snapshot(i))
            time.sleep(0.05)
        rec.close(meta={"k": "v"})
        release.set()
        assert rec.dropped >= 3
        meta = json.loads((Path(td) / "session.json").read_text())
        assert meta["rows_dropped"] == rec.dropped

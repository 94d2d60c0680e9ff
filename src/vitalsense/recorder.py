"""Snapshot recorder: CSV rows on a background thread plus a JSON summary.

Acts as a ``SnapshotObserver``. Rows go through a bounded queue; when the
writer falls behind, rows are dropped rather than blocking the session.
"""

from __future__ import annotations

import csv
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, List, Optional

from .models import BiomarkerSnapshot, SessionStatus

logger = logging.getLogger(__name__)

SNAPSHOT_COLUMNS = (
    "timestamp",
    "frame_number",
    "status",
    "heart_rate",
    "rmssd",
    "sdnn",
    "lf_hf_ratio",
    "spo2",
    "blood_pressure",
    "respiratory_rate",
    "perfusion_index",
    "stress_level",
    "f0",
    "jitter",
    "shimmer",
    "hnr",
    "vocal_stress",
    "calculated_count",
    "quality_score",
)


def snapshot_row(snap: BiomarkerSnapshot) -> List[Any]:
    merged: Dict[str, Any] = {**snap.rppg, **snap.voice}
    head = {
        "timestamp": round(snap.timestamp, 3),
        "frame_number": snap.frame_number,
        "status": snap.status.value,
        "heart_rate": snap.heart_rate,
        "calculated_count": snap.calculated_count,
        "quality_score": snap.quality_score,
    }
    return [head[c] if c in head else merged.get(c, "") for c in SNAPSHOT_COLUMNS]


@dataclass
class RecorderConfig:
    out_dir: Path
    base_name: str = "session"
    max_pending: int = 1024
    close_timeout: float = 2.0  # seconds, per shutdown step


class SnapshotRecorder:
    """Append snapshots to CSV and write a JSON metadata file on close."""

    def __init__(self, cfg: RecorderConfig) -> None:
        self.cfg = cfg
        self.cfg.out_dir.mkdir(parents=True, exist_ok=True)
        self.csv_path = self.cfg.out_dir / f"{self.cfg.base_name}.csv"
        self.meta_path = self.cfg.out_dir / f"{self.cfg.base_name}.json"
        self._csv_file: Optional[Any] = None
        self._writer: Optional[Any] = None
        self._queue: "Queue[Optional[List[Any]]]" = Queue(maxsize=cfg.max_pending)
        self._worker: Optional[threading.Thread] = None
        self.dropped = 0
        self.written = 0
        self.statuses: List[Dict[str, Any]] = []

    def open(self) -> None:
        self._csv_file = self.csv_path.open("w", newline="", encoding="utf-8")
        self._writer = csv.writer(self._csv_file)
        self._writer.writerow(SNAPSHOT_COLUMNS)
        # Start background worker
        self._worker = threading.Thread(target=self._loop, name="snapshot-recorder", daemon=True)
        self._worker.start()

    def __enter__(self) -> "SnapshotRecorder":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # SnapshotObserver
    def on_snapshot(self, snapshot: BiomarkerSnapshot) -> None:
        if self._writer is None:
            raise RuntimeError("Recorder not opened")
        try:
            self._queue.put_nowait(snapshot_row(snapshot))
        except Full:
            self.dropped += 1

    def on_status(self, status: SessionStatus, detail: Optional[str] = None) -> None:
        self.statuses.append({"status": status.value, "detail": detail})

    def write_meta(self, meta: Dict[str, Any]) -> None:
        data = {
            "rows_written": self.written,
            "rows_dropped": self.dropped,
            "statuses": self.statuses,
            **meta,
        }
        self.meta_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    def close(self, meta: Optional[Dict[str, Any]] = None) -> None:
        if self._worker is not None:
            self._post_sentinel()
            self._worker.join(timeout=self.cfg.close_timeout)
            if self._worker.is_alive():
                logger.warning("Recorder writer did not finish within %.1f s", self.cfg.close_timeout)
            self._worker = None
        if self._csv_file is not None:
            self._csv_file.close()
            self._csv_file = None
            self._writer = None
        if meta is not None:
            self.write_meta(meta)

    def _post_sentinel(self) -> None:
        try:
            self._queue.put(None, timeout=self.cfg.close_timeout)
            return
        except Full:
            logger.warning("Recorder writer stalled; discarding pending rows")
        # Make room for the sentinel
        while True:
            try:
                self._queue.get_nowait()
            except Empty:
                break
            self.dropped += 1
        try:
            self._queue.put_nowait(None)
        except Full:
            logger.error("Could not stop recorder writer")

    def _write(self, row: List[Any]) -> None:
        writer = self._writer
        if writer is None:
            # Closed while the writer was stalled
            self.dropped += 1
            return
        try:
            writer.writerow(row)
            self.written += 1
        except (OSError, ValueError, csv.Error):
            logger.exception("Failed to write snapshot row")

    def _loop(self) -> None:
        f = self._csv_file
        assert f is not None
        while True:
            try:
                item = self._queue.get(timeout=0.5)
            except Empty:
                # Periodic flush
                if not f.closed:
                    f.flush()
                continue
            if item is None:
                # Drain remaining items
                while True:
                    try:
                        rest = self._queue.get_nowait()
                    except Empty:
                        break
                    if rest is None:
                        break
                    self._write(rest)
                if not f.closed:
                    f.flush()
                break
            self._write(item)

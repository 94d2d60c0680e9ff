from __future__ import annotations

import json
import logging

from vitalsense.diagnostics import DiagnosticTrace
from vitalsense.logsetup import StructuredFormatter, setup_logging


def test_trace_keeps_most_recent_events() -> None:
    tr = DiagnosticTrace(max_events=100)
    for i in range(150):
        tr.record("rppg", "frequency", "ok", {"i": i}, timestamp=float(i))
    assert len(tr) == 100
    events = tr.events()
    assert events[0].payload["i"] == 50.0
    assert events[-1].timestamp == 149.0
    tr.clear()
    assert len(tr) == 0


def test_trace_drops_missing_payload_values_and_exports_json() -> None:
    tr = DiagnosticTrace()
    tr.record("voice", "analyze", "silence", {"rms": 0.001, "f0": None}, timestamp=1.0)
    data = json.loads(tr.to_json())
    assert data == [
        {
            "timestamp": 1.0,
            "category": "voice",
            "step": "analyze",
            "message": "silence",
            "payload": {"rms": 0.001},
        }
    ]


def test_structured_formatter_plain() -> None:
    rec = logging.LogRecord("vitalsense.session", logging.WARNING, __file__, 1, "status %s", ("failed",), None)
    line = StructuredFormatter(use_color=False).format(rec)
    assert "WARNING" in line
    assert "[vitalsense.session] status failed" in line
    assert "\033[" not in line


def test_setup_logging_writes_file(tmp_path, restore_logging) -> None:
    log_file = tmp_path / "logs" / "run.log"
    setup_logging("DEBUG", log_file=log_file, use_color=False)
    logging.getLogger("vitalsense.test").info("hello %d", 42)
    for h in logging.getLogger().handlers:
        h.flush()
    assert "hello 42" in log_file.read_text(encoding="utf-8")
    assert logging.getLogger().level == logging.DEBUG

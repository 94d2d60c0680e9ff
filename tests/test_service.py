from __future__ import annotations

import numpy as np
import pytest
from fastapi.testclient import TestClient

from vitalsense.service import make_app


def _rgb_payload(n: int, t0: float = 0.0) -> dict:
    fs = 30.0
    t = t0 + np.arange(n) / fs
    g = 150.0 + 2.0 * np.sin(2 * np.pi * 1.2 * t)
    return {"t0": t0, "dt": 1 / fs, "mean_rgb": [[200.0, float(v), 120.0] for v in g], "quality": 0.9}


def test_ingest_rgb_then_metrics() -> None:
    client = TestClient(make_app())
    r = client.get("/metrics")
    assert r.status_code == 200
    assert r.json() == {"status": "accumulating"}

    r = client.post("/ingest/rgb", json=_rgb_payload(300))
    assert r.status_code == 200
    body = r.json()
    assert body["count"] == 300
    assert body["accepted"] == 300
    assert body["status"] == "analyzing"

    m = client.get("/metrics").json()
    assert 66 <= m["heart_rate"] <= 78
    assert m["rppg"]["heart_rate"] == m["heart_rate"]
    assert m["frame_number"] == 300

    st = client.get("/status").json()
    assert st["buffer_length"] == 300
    assert st["error"] is None


def test_control_validates_and_applies() -> None:
    app = make_app()
    client = TestClient(app)
    assert client.post("/control", json={"quality_threshold": 2.0}).status_code == 422
    r = client.post("/control", json={"quality_threshold": 0.5, "max_change_bpm": 10})
    assert r.status_code == 200
    params = r.json()["params"]
    assert params["quality_threshold"] == 0.5
    assert params["max_change_bpm"] == 10.0
    assert app.state.controller.cfg.validator.max_change_bpm == 10.0


def test_low_quality_ingest_is_rejected() -> None:
    client = TestClient(make_app())
    payload = _rgb_payload(10)
    payload["quality"] = 0.1
    body = client.post("/ingest/rgb", json=payload).json()
    assert body["accepted"] == 0
    assert client.get("/status").json()["rejected_frames"] == 10


def test_audio_ingest_and_trace_and_reset() -> None:
    client = TestClient(make_app())
    t = np.arange(16000) / 16000.0
    tone = (0.5 * np.sin(2 * np.pi * 150.0 * t)).tolist()
    r = client.post("/ingest/audio", json={"t0": 0.0, "sample_rate": 16000, "samples": tone[:8000]})
    assert r.json() == {"status": "buffered", "analyzed": False}
    r = client.post("/ingest/audio", json={"t0": 0.5, "sample_rate": 16000, "samples": tone[8000:]})
    body = r.json()
    assert body["analyzed"] is True
    assert body["has_voice"] is True
    assert abs(body["voice"]["f0"] - 150.0) < 5.0

    client.post("/ingest/rgb", json=_rgb_payload(150))
    trace = client.get("/trace").json()
    assert 0 < len(trace) <= 100
    assert {"timestamp", "category", "step", "message", "payload"} <= set(trace[0])

    assert client.post("/reset").json() == {"status": "accumulating"}
    assert client.get("/status").json()["frame_number"] == 0


def test_websocket_clients_are_unsubscribed_on_any_exit() -> None:
    app = make_app()
    client = TestClient(app)
    with client.websocket_connect("/ws") as ws:
        ws.send_text("ping")
    assert app.state.ws_clients == set()

    # A binary frame makes the text receive fail with a non-disconnect error
    with pytest.raises(Exception):
        with client.websocket_connect("/ws") as ws:
            ws.send_bytes(b"\x00")
            ws.receive_text()
    assert app.state.ws_clients == set()

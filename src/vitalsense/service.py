"""FastAPI service exposing the session pipeline over HTTP and WebSocket.

Clients either POST mean-RGB samples (`/ingest/rgb`, the ROI step is done
client-side) and audio blocks (`/ingest/audio`), and read the latest
snapshot from `/metrics` or receive it on `/ws`. Ticks are serialized with an
asyncio lock, so the session itself stays single-threaded.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import numpy as np
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .config import SessionConfig
from .models import ChannelSample, VoiceFrame
from .session import SessionController, SnapshotChannel

logger = logging.getLogger(__name__)


class ControlModel(BaseModel):
    quality_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    evaluation_interval: Optional[int] = Field(None, ge=1, le=300)
    min_snr: Optional[float] = Field(None, ge=0.5, le=20.0)
    max_change_bpm: Optional[float] = Field(None, ge=1.0, le=60.0)
    smoothing_alpha: Optional[float] = Field(None, gt=0.0, le=1.0)


class IngestModel(BaseModel):
    t0: float
    dt: float = Field(..., gt=0.0)
    mean_rgb: list[tuple[float, float, float]]
    quality: float = Field(1.0, ge=0.0, le=1.0)


class AudioIngestModel(BaseModel):
    t0: float
    sample_rate: int = Field(..., ge=4000, le=96000)
    samples: list[float]


def make_app(cfg: Optional[SessionConfig] = None, push_interval: float = 0.2) -> FastAPI:
    controller = SessionController(cfg)
    channel = SnapshotChannel()
    controller.add_observer(channel)
    lock = asyncio.Lock()
    ws_clients: set[WebSocket] = set()

    async def push_loop() -> None:
        while True:
            try:
                await asyncio.sleep(push_interval)
                snap = channel.take()
                if snap is None or not ws_clients:
                    continue
                msg = json.dumps(snap.to_dict())
                dead: list[WebSocket] = []
                for w in ws_clients:
                    try:
                        await w.send_text(msg)
                    except Exception:
                        logger.info("Dropping WebSocket client after send failure")
                        dead.append(w)
                for w in dead:
                    ws_clients.discard(w)
            except asyncio.CancelledError:
                break

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # pragma: no cover - integration
        task = asyncio.create_task(push_loop())
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    app = FastAPI(title="vitalsense", version="0.1.0", lifespan=lifespan)
    app.state.controller = controller
    app.state.channel = channel
    app.state.ws_clients = ws_clients

    @app.get("/health")
    async def health() -> dict[str, str]:  # pragma: no cover - trivial
        return {"status": "ok"}

    @app.get("/status")
    async def get_status() -> dict:
        async with lock:
            st = controller.state
            return {
                "status": st.status.value,
                "frame_number": st.frame_number,
                "buffer_length": len(st.window),
                "rejected_frames": st.rejected_frames,
                "dropped_snapshots": channel.dropped,
                "error": st.error,
            }

    @app.get("/metrics")
    async def get_metrics() -> dict:
        async with lock:
            snap = controller.state.last_snapshot
            if snap is None:
                return {"status": controller.status.value}
            return snap.to_dict()

    @app.get("/trace")
    async def get_trace() -> list[dict]:
        async with lock:
            return controller.trace.export()

    @app.post("/control")
    async def post_control(body: ControlModel) -> dict:
        async with lock:
            c = controller.cfg
            data = body.model_dump(exclude_none=True)
            if "quality_threshold" in data:
                c.quality_threshold = data["quality_threshold"]
            if "evaluation_interval" in data:
                c.evaluation_interval = data["evaluation_interval"]
            if "min_snr" in data:
                c.analyzer.min_snr = data["min_snr"]
            if "max_change_bpm" in data:
                c.validator.max_change_bpm = data["max_change_bpm"]
            if "smoothing_alpha" in data:
                c.validator.alpha = data["smoothing_alpha"]
            logger.info("Control update: %s", data)
            return {
                "status": "ok",
                "params": {
                    "quality_threshold": c.quality_threshold,
                    "evaluation_interval": c.evaluation_interval,
                    "min_snr": c.analyzer.min_snr,
                    "max_change_bpm": c.validator.max_change_bpm,
                    "smoothing_alpha": c.validator.alpha,
                },
            }

    @app.post("/ingest/rgb")
    async def post_ingest_rgb(payload: IngestModel) -> dict:
        # Append meanRGB samples with timestamps
        if not payload.mean_rgb:
            return {"status": "empty"}
        t = payload.t0
        accepted = 0
        async with lock:
            for r, g, b in payload.mean_rgb:
                sample = ChannelSample(r=r, g=g, b=b, quality=payload.quality, timestamp=t)
                if sample.quality >= controller.cfg.quality_threshold:
                    accepted += 1
                controller.process_sample(sample)
                t += payload.dt
            snap = controller.state.last_snapshot
            return {
                "status": controller.status.value,
                "count": len(payload.mean_rgb),
                "accepted": accepted,
                "heart_rate": snap.heart_rate if snap is not None else None,
            }

    @app.post("/ingest/audio")
    async def post_ingest_audio(payload: AudioIngestModel) -> dict:
        if not payload.samples:
            return {"status": "empty"}
        block = VoiceFrame(
            samples=np.clip(np.asarray(payload.samples, dtype=np.float32), -1.0, 1.0),
            sample_rate=payload.sample_rate,
            timestamp=payload.t0,
        )
        async with lock:
            update = controller.process_audio(block)
        if update is None:
            return {"status": "buffered", "analyzed": False}
        return {
            "status": "ok",
            "analyzed": True,
            "has_voice": update.has_voice,
            "voice": update.biomarkers.to_dict(),
            "audio_quality": update.levels.grade,
        }

    @app.post("/reset")
    async def post_reset() -> dict:
        async with lock:
            controller.reset()
            channel.take()
            return {"status": controller.status.value}

    @app.websocket("/ws")
    async def ws_metrics(ws: WebSocket) -> None:
        await ws.accept()
        ws_clients.add(ws)
        try:
            while True:
                # keep alive; updates are pushed from the loop
                await ws.receive_text()
        except WebSocketDisconnect:
            logger.debug("WebSocket client disconnected")
        finally:
            ws_clients.discard(ws)

    return app


app = make_app()


def main(host: str = "127.0.0.1", port: int = 8000, cfg: Optional[SessionConfig] = None) -> None:  # pragma: no cover - manual run helper
    import uvicorn

    uvicorn.run(app if cfg is None else make_app(cfg), host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()

"""Frame and audio sources (OpenCV camera/video, arrays, WAV, microphone).

Sources return ``None`` at end of stream and raise ``DeviceUnavailable`` when
the underlying device cannot be opened or stops delivering data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from queue import Empty, Full, Queue
from time import perf_counter
from typing import Iterable, Optional, Union

import numpy as np

from .errors import DeviceUnavailable
from .models import Frame, VoiceFrame

logger = logging.getLogger(__name__)


@dataclass
class CaptureConfig:
    device: Union[int, str] = 0  # camera index or video file path
    width: int = 640
    height: int = 480
    fps: int = 30


class CameraSource:
    """Thin wrapper around OpenCV VideoCapture yielding RGB frames.

    Imports cv2 lazily to avoid import-time side effects in non-camera contexts.
    Video files are timestamped from their frame rate; cameras from the clock.
    """

    def __init__(self, cfg: Optional[CaptureConfig] = None) -> None:
        self.cfg = cfg or CaptureConfig()
        self._cap = None
        self._is_file = isinstance(self.cfg.device, str)
        self._file_fps = float(self.cfg.fps)
        self._index = 0

    def open(self) -> None:
        import cv2  # local import

        dev = self.cfg.device
        if self._is_file and not Path(str(dev)).exists():
            raise DeviceUnavailable(f"Video file not found: {dev}", source=str(dev))
        self._cap = cv2.VideoCapture(dev)
        if not self._cap.isOpened():  # type: ignore[union-attr]
            self._cap = None
            raise DeviceUnavailable(f"Failed to open video source {dev!r}", source=str(dev))
        if self._is_file:
            fps = float(self._cap.get(cv2.CAP_PROP_FPS) or 0.0)  # type: ignore[union-attr]
            if fps > 0:
                self._file_fps = fps
        else:
            # Set properties (best-effort)
            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.cfg.width)  # type: ignore[union-attr]
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.cfg.height)  # type: ignore[union-attr]
            self._cap.set(cv2.CAP_PROP_FPS, self.cfg.fps)  # type: ignore[union-attr]
        logger.info("Opened video source %r", dev)

    def next_frame(self) -> Optional[Frame]:
        """Read a frame; None at the end of a video file."""
        import cv2

        if self._cap is None:
            self.open()
        ok, frame_bgr = self._cap.read()  # type: ignore[union-attr]
        if not ok:
            if self._is_file:
                return None
            raise DeviceUnavailable("Camera read failed", source=str(self.cfg.device))
        if self._is_file:
            ts = self._index / self._file_fps
        else:
            ts = perf_counter()
        self._index += 1
        rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        h, w = rgb.shape[:2]
        return Frame(pixels=rgb, width=w, height=h, timestamp=ts)

    def release(self) -> None:
        if self._cap is not None:
            self._cap.release()  # type: ignore[union-attr]
            self._cap = None

    def __enter__(self) -> "CameraSource":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class ArrayFrameSource:
    """Replay in-memory RGB(A) frames at a fixed rate."""

    def __init__(self, frames: Iterable[np.ndarray], fps: float = 30.0, t0: float = 0.0) -> None:
        self._frames = iter(frames)
        self.fps = float(fps)
        self.t0 = float(t0)
        self._index = 0

    def next_frame(self) -> Optional[Frame]:
        pixels = next(self._frames, None)
        if pixels is None:
            return None
        pixels = np.asarray(pixels)
        ts = self.t0 + self._index / self.fps
        self._index += 1
        return Frame(pixels=pixels, width=int(pixels.shape[1]), height=int(pixels.shape[0]), timestamp=ts)


def to_float_audio(data: np.ndarray) -> np.ndarray:
    """Convert integer or float PCM (any channel count) to mono float32 in [-1, 1]."""
    x = np.asarray(data)
    if x.ndim == 2:
        x = x.astype(np.float64).mean(axis=1)
        if np.issubdtype(data.dtype, np.integer):
            x = x.astype(data.dtype)
    if x.dtype == np.uint8:
        y = (x.astype(np.float32) - 128.0) / 128.0
    elif np.issubdtype(x.dtype, np.integer):
        y = x.astype(np.float32) / float(np.iinfo(x.dtype).max)
    else:
        y = x.astype(np.float32)
    return np.clip(y, -1.0, 1.0)


class WavAudioSource:
    """Serve a WAV file as fixed-size blocks.

    The file is read on ``open()`` or the first ``next_block()``, like
    ``CameraSource`` opens its device.
    """

    def __init__(self, path: Union[str, Path], block_seconds: float = 1.0 / 30.0) -> None:
        self.path = Path(path)
        self.block_seconds = float(block_seconds)
        self.sample_rate: Optional[int] = None
        self._samples: Optional[np.ndarray] = None
        self._block = 1
        self._pos = 0

    def open(self) -> None:
        from scipy.io import wavfile

        try:
            rate, data = wavfile.read(self.path)
        except (FileNotFoundError, ValueError) as exc:
            raise DeviceUnavailable(f"Cannot read WAV file {self.path}: {exc}", source=str(self.path)) from exc
        self.sample_rate = int(rate)
        self._samples = to_float_audio(data)
        self._block = max(1, int(round(self.block_seconds * self.sample_rate)))
        self._pos = 0
        logger.info("Opened WAV file %s (%d Hz)", self.path, self.sample_rate)

    def next_block(self) -> Optional[VoiceFrame]:
        if self._samples is None:
            self.open()
        assert self._samples is not None and self.sample_rate is not None
        if self._pos >= self._samples.size:
            return None
        block = self._samples[self._pos : self._pos + self._block]
        ts = self._pos / float(self.sample_rate)
        self._pos += block.size
        return VoiceFrame(samples=block, sample_rate=self.sample_rate, timestamp=ts)


class MicrophoneSource:
    """Live microphone input through sounddevice (``audio`` extra).

    The stream callback runs on the PortAudio thread and hands blocks over a
    bounded queue; when the queue is full the block is dropped.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        block_seconds: float = 0.1,
        device: Optional[Union[int, str]] = None,
        max_pending: int = 64,
    ) -> None:
        self.sample_rate = int(sample_rate)
        self.blocksize = max(1, int(block_seconds * self.sample_rate))
        self.device = device
        self._queue: "Queue[np.ndarray]" = Queue(maxsize=max_pending)
        self._stream = None
        self.dropped = 0

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.warning("Audio input status: %s", status)
        try:
            self._queue.put_nowait(indata[:, 0].copy())
        except Full:
            self.dropped += 1

    def open(self) -> None:
        try:
            import sounddevice as sd  # type: ignore

            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self.blocksize,
                device=self.device,
                callback=self._callback,
            )
            self._stream.start()
        except Exception as exc:
            self._stream = None
            raise DeviceUnavailable(f"Failed to open microphone: {exc}", source="microphone") from exc
        logger.info("Microphone stream started at %d Hz", self.sample_rate)

    def next_block(self, timeout: float = 0.0) -> Optional[VoiceFrame]:
        """Return the next captured block, or None when nothing is pending."""
        if self._stream is None:
            self.open()
        try:
            block = self._queue.get(timeout=timeout) if timeout > 0 else self._queue.get_nowait()
        except Empty:
            return None
        return VoiceFrame(samples=block, sample_rate=self.sample_rate, timestamp=perf_counter())

    def close(self) -> None:
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None

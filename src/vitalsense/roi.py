"""Face-region extraction and skin-pixel classification.

The extractor samples fixed fractional boxes (forehead, cheeks, nose) either
of the whole frame or of a face box returned by an optional locator:
- FaceCascadeLocator: OpenCV Haar cascade (no ML runtime beyond OpenCV)
- MediaPipeFaceLocator: MediaPipe Face Detection (optional extra)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Union

import numpy as np

from .config import Box, RegionConfig
from .errors import InvalidFrameError
from .models import ChannelSample, Frame, RegionSample

logger = logging.getLogger(__name__)

FaceBox = Tuple[int, int, int, int]  # x, y, w, h in pixels
Locator = Callable[[np.ndarray], Optional[FaceBox]]


def _as_rgb(frame: np.ndarray) -> np.ndarray:
    if frame.ndim != 3 or frame.shape[2] not in (3, 4):
        raise InvalidFrameError(
            "frame must be HxWx3 (RGB) or HxWx4 (RGBA) array",
            details={"shape": list(frame.shape)},
        )
    return frame[..., :3]


def mean_rgb(
    frame_rgb: np.ndarray,
    mask: Optional[np.ndarray] = None,
) -> Tuple[float, float, float]:
    """Compute mean RGB over an optional boolean mask.

    Args:
        frame_rgb: HxWx3 (or HxWx4) uint8 or float array in RGB order.
        mask: optional HxW boolean array; True selects pixels to include.

    Returns:
        (R, G, B) means as floats.
    """
    rgb = _as_rgb(frame_rgb).astype(np.float32)
    if mask is not None:
        if mask.shape != rgb.shape[:2]:
            raise InvalidFrameError("mask must match frame spatial shape")
        m = mask.astype(bool)
        if not np.any(m):
            return 0.0, 0.0, 0.0
        sel = rgb[m]
    else:
        sel = rgb.reshape(-1, 3)
    r_mean, g_mean, b_mean = sel.mean(axis=0)
    return float(r_mean), float(g_mean), float(b_mean)


def rgb_to_hsv(rgb: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Vectorized RGB -> HSV. Hue in whole degrees [0, 360), S and V in [0, 1]."""
    x = np.asarray(rgb, dtype=np.float32) / 255.0
    r, g, b = x[..., 0], x[..., 1], x[..., 2]
    mx = x.max(axis=-1)
    mn = x.min(axis=-1)
    delta = mx - mn
    safe = np.where(delta > 0, delta, 1.0)
    h = np.zeros_like(mx)
    is_r = (mx == r) & (delta > 0)
    is_g = (mx == g) & (delta > 0) & ~is_r
    is_b = (delta > 0) & ~is_r & ~is_g
    h = np.where(is_r, np.fmod((g - b) / safe, 6.0), h)
    h = np.where(is_g, (b - r) / safe + 2.0, h)
    h = np.where(is_b, (r - g) / safe + 4.0, h)
    h = np.round(h * 60.0)
    h = np.where(h < 0, h + 360.0, h)
    s = np.where(mx > 0, delta / np.where(mx > 0, mx, 1.0), 0.0)
    return h, s, mx


def rgb_to_ycbcr(rgb: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Vectorized full-range RGB -> YCbCr (ITU-R BT.601)."""
    x = np.asarray(rgb, dtype=np.float32)
    r, g, b = x[..., 0], x[..., 1], x[..., 2]
    y = 0.299 * r + 0.587 * g + 0.114 * b
    cb = 128.0 - 0.168736 * r - 0.331264 * g + 0.5 * b
    cr = 128.0 + 0.5 * r - 0.418688 * g - 0.081312 * b
    return y, cb, cr


def skin_mask(rgb: np.ndarray) -> np.ndarray:
    """Boolean skin mask: RGB rule OR (HSV rule AND YCbCr rule)."""
    x = np.asarray(rgb, dtype=np.float32)
    r, g, b = x[..., 0], x[..., 1], x[..., 2]
    mx = x.max(axis=-1)
    mn = x.min(axis=-1)
    rgb_rule = (
        (r > 95)
        & (g > 40)
        & (b > 20)
        & (mx - mn > 15)
        & (np.abs(r - g) > 15)
        & (r > g)
        & (r > b)
    )
    h, s, _ = rgb_to_hsv(x)
    hsv_rule = (h >= 0) & (h <= 50) & (s >= 0.23) & (s <= 0.68)
    _, cb, cr = rgb_to_ycbcr(x)
    ycbcr_rule = (cb >= 77) & (cb <= 127) & (cr >= 133) & (cr <= 173)
    return rgb_rule | (hsv_rule & ycbcr_rule)


def region_slices(
    box: Box,
    width: int,
    height: int,
    origin: Optional[FaceBox] = None,
) -> Tuple[slice, slice]:
    """Convert a fractional box into (row, col) slices clipped to the frame."""
    ox, oy, ow, oh = origin if origin is not None else (0, 0, width, height)
    fx, fy, fw, fh = box
    x0 = ox + int(fx * ow)
    y0 = oy + int(fy * oh)
    x1 = x0 + int(fw * ow)
    y1 = y0 + int(fh * oh)
    x0, x1 = max(0, x0), min(width, x1)
    y0, y1 = max(0, y0), min(height, y1)
    return slice(y0, max(y0, y1)), slice(x0, max(x0, x1))


class RegionExtractor:
    """Extract a quality-weighted RGB sample from skin pixels of face regions."""

    def __init__(self, cfg: Optional[RegionConfig] = None, locator: Optional[Locator] = None) -> None:
        self.cfg = cfg or RegionConfig()
        self.locator = locator

    def measure(self, rgb: np.ndarray, name: str, sl: Tuple[slice, slice]) -> Optional[RegionSample]:
        """Return the region sample, or None when it fails the skin criteria."""
        ds = max(1, int(self.cfg.downscale))
        patch = rgb[sl[0], sl[1]][::ds, ::ds]
        total = int(patch.shape[0] * patch.shape[1])
        if total == 0:
            return None
        m = skin_mask(patch)
        skin = int(np.count_nonzero(m))
        frac = skin / total
        if skin < self.cfg.min_skin_pixels or not frac > self.cfg.min_skin_fraction:
            return None
        sel = patch[m].astype(np.float32)
        r, g, b = sel.mean(axis=0)
        return RegionSample(name, float(r), float(g), float(b), float(frac), skin)

    def extract(self, frame: Union[Frame, np.ndarray], timestamp: float = 0.0) -> Optional[ChannelSample]:
        """Extract a ChannelSample, or None when no region holds enough skin."""
        if isinstance(frame, Frame):
            pixels = frame.pixels
            timestamp = frame.timestamp
        else:
            pixels = frame
        rgb = _as_rgb(np.asarray(pixels))
        h, w = rgb.shape[:2]
        origin: Optional[FaceBox] = None
        if self.locator is not None:
            origin = self.locator(rgb)
            if origin is None:
                logger.debug("No face located; sampling full frame")
        results: List[RegionSample] = []
        for name, box in self.cfg.regions.items():
            res = self.measure(rgb, name, region_slices(box, w, h, origin))
            if res is not None:
                results.append(res)
        if not results:
            return None
        q = np.array([res.quality for res in results], dtype=np.float64)
        vals = np.array([[res.r, res.g, res.b] for res in results], dtype=np.float64)
        r, g, b = (q[:, None] * vals).sum(axis=0) / q.sum()
        return ChannelSample(
            r=float(r),
            g=float(g),
            b=float(b),
            quality=float(q.mean()),
            timestamp=float(timestamp),
            regions=len(results),
            region_data=tuple(results),
        )


def _clamp_box(x: int, y: int, bw: int, bh: int, w: int, h: int) -> FaceBox:
    x = max(0, min(w - 1, int(x)))
    y = max(0, min(h - 1, int(y)))
    bw = max(1, min(w - x, int(bw)))
    bh = max(1, min(h - y, int(bh)))
    return x, y, bw, bh


@dataclass
class FaceLocatorConfig:
    downscale: int = 2  # speed-up for detection
    min_confidence: float = 0.5


class FaceCascadeLocator:
    """OpenCV Haar-cascade face box locator."""

    def __init__(self, cfg: Optional[FaceLocatorConfig] = None) -> None:
        import cv2

        self.cfg = cfg or FaceLocatorConfig()
        cascade_path = cv2.data.haarcascades + "haarcascade_frontalface_default.xml"
        self._clf = cv2.CascadeClassifier(cascade_path)

    def __call__(self, frame_rgb: np.ndarray) -> Optional[FaceBox]:
        import cv2

        h, w = frame_rgb.shape[:2]
        ds = max(1, int(self.cfg.downscale))
        small = np.ascontiguousarray(frame_rgb[::ds, ::ds, :3])
        gray = cv2.cvtColor(small, cv2.COLOR_RGB2GRAY)
        faces = self._clf.detectMultiScale(
            gray, scaleFactor=1.1, minNeighbors=5, flags=cv2.CASCADE_SCALE_IMAGE
        )
        if len(faces) == 0:
            return None
        # Largest face only
        x, y, bw, bh = max(faces, key=lambda r: r[2] * r[3])
        return _clamp_box(x * ds, y * ds, bw * ds, bh * ds, w, h)


class MediaPipeFaceLocator:
    """Face box locator using MediaPipe Face Detection (CPU/TFLite)."""

    def __init__(self, cfg: Optional[FaceLocatorConfig] = None) -> None:
        self.cfg = cfg or FaceLocatorConfig()
        self._fd = None

    def _ensure_model(self) -> None:
        if self._fd is None:
            try:
                import mediapipe as mp  # type: ignore

                self._fd = mp.solutions.face_detection.FaceDetection(
                    model_selection=0,
                    min_detection_confidence=self.cfg.min_confidence,
                )
            except Exception as exc:  # pragma: no cover - optional path
                raise RuntimeError(f"Failed to initialize MediaPipe FaceDetection: {exc}") from exc

    def __call__(self, frame_rgb: np.ndarray) -> Optional[FaceBox]:
        self._ensure_model()
        h, w = frame_rgb.shape[:2]
        ds = max(1, int(self.cfg.downscale))
        small = np.ascontiguousarray(frame_rgb[::ds, ::ds, :3])
        result = self._fd.process(small)  # type: ignore[union-attr]
        if not result.detections:
            return None
        loc = result.detections[0].location_data.relative_bounding_box
        return _clamp_box(loc.xmin * w, loc.ymin * h, loc.width * w, loc.height * h, w, h)

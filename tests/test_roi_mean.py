from __future__ import annotations

import numpy as np
import pytest

from vitalsense.errors import InvalidFrameError
from vitalsense.models import Frame
from vitalsense.roi import RegionExtractor, mean_rgb, skin_mask

SKIN = (200.0, 150.0, 120.0)
BLUE = (30.0, 80.0, 200.0)


def _frame(color, h: int = 40, w: int = 40) -> np.ndarray:
    return np.tile(np.array(color, dtype=np.float32), (h, w, 1))


def test_mean_rgb_with_and_without_mask() -> None:
    # Create a simple 2x2 RGB image
    rgb = np.array(
        [
            [[255, 0, 0], [0, 255, 0]],
            [[0, 0, 255], [255, 255, 255]],
        ],
        dtype=np.uint8,
    )
    # No mask -> mean over all pixels
    r, g, b = mean_rgb(rgb, mask=None)
    assert np.isclose(r, (255 + 0 + 0 + 255) / 4.0)
    assert np.isclose(g, (0 + 255 + 0 + 255) / 4.0)
    assert np.isclose(b, (0 + 0 + 255 + 255) / 4.0)

    # Mask only the top row
    mask = np.array([[1, 1], [0, 0]], dtype=bool)
    r2, g2, b2 = mean_rgb(rgb, mask=mask)
    assert np.isclose(r2, (255 + 0) / 2.0)
    assert np.isclose(g2, (0 + 255) / 2.0)
    assert np.isclose(b2, (0 + 0) / 2.0)


def test_skin_mask_separates_skin_tone_from_blue() -> None:
    img = np.array([[SKIN, BLUE]], dtype=np.float32)
    m = skin_mask(img)
    assert m.tolist() == [[True, False]]


def test_extractor_returns_weighted_sample_for_skin_frame() -> None:
    ext = RegionExtractor()
    sample = ext.extract(Frame(_frame(SKIN), 40, 40, timestamp=1.5))
    assert sample is not None
    assert sample.regions == 4
    assert np.isclose(sample.quality, 1.0)
    assert np.isclose(sample.g, 150.0)
    assert sample.timestamp == 1.5
    assert {r.name for r in sample.region_data} == {"forehead", "left_cheek", "right_cheek", "nose"}


def test_extractor_rejects_frames_below_30_percent_skin() -> None:
    img = _frame(BLUE)
    img[:, ::5] = SKIN  # one column in five: at most 25% of any region
    assert RegionExtractor().extract(img, timestamp=0.0) is None
    assert RegionExtractor().extract(_frame(BLUE), timestamp=0.0) is None


def test_extractor_accepts_rgba_and_rejects_bad_shapes() -> None:
    rgba = np.concatenate([_frame(SKIN), np.full((40, 40, 1), 255, np.float32)], axis=2)
    assert RegionExtractor().extract(rgba) is not None
    with pytest.raises(InvalidFrameError):
        RegionExtractor().extract(np.zeros((40, 40), dtype=np.uint8))


def test_extractor_uses_locator_box() -> None:
    img = _frame(BLUE, 80, 80)
    img[40:80, 40:80] = SKIN
    ext = RegionExtractor(locator=lambda rgb: (40, 40, 40, 40))
    sample = ext.extract(img)
    assert sample is not None and sample.regions == 4

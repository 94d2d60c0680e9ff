from __future__ import annotations

import logging

import numpy as np
import pytest

SKIN = (200.0, 150.0, 120.0)


def _pulse_frames(n: int, bpm: float = 72.0, fs: float = 30.0, size: int = 40):
    """Skin-colored frames whose green channel pulses at ``bpm``."""
    base = np.tile(np.array(SKIN, dtype=np.float32), (size, size, 1))
    for i in range(n):
        f = base.copy()
        f[..., 1] += 2.0 * np.sin(2 * np.pi * (bpm / 60.0) * i / fs)
        yield f


@pytest.fixture
def pulse_frames():
    return _pulse_frames


@pytest.fixture
def restore_logging():
    # setup_logging replaces root handlers; put pytest's back afterwards
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for h in root.handlers:
        if h not in handlers:
            h.close()
    root.handlers[:] = handlers
    root.setLevel(level)

"""
conftest.py
-----------
Shared pytest fixtures for the capsolve test suite.
"""

from __future__ import annotations

import cv2
import numpy as np
import pytest

from capsolve.inference.engine import InferenceEngine
from capsolve.processing.charset import Charset
from capsolve.processing.imaging import encode_png


class FakeEngine(InferenceEngine):
    """Returns a canned output (or the result of a callable) and records inputs."""

    def __init__(self, output) -> None:
        super().__init__()
        self._output = output
        self.inputs: list[np.ndarray] = []

    def _infer(self, tensor: np.ndarray) -> np.ndarray:
        self.inputs.append(tensor)
        if callable(self._output):
            return self._output(tensor)
        return self._output


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_engine():
    """Factory: ``fake_engine(output)`` -> :class:`FakeEngine`."""
    return FakeEngine


@pytest.fixture
def to_png():
    return encode_png


@pytest.fixture
def line_charset() -> Charset:
    """1-channel line model, 64 px high, width from aspect ratio."""
    return Charset(word=False, image=(-1, 64), channel=1, charset=["", "a", "b", "c", "1", "2"])


@pytest.fixture
def rgb_charset() -> Charset:
    """3-channel model with fixed 32x16 geometry."""
    return Charset(word=False, image=(32, 16), channel=3, charset=["", "x", "y"])


@pytest.fixture
def sample_rgb() -> np.ndarray:
    """A 40x100 RGB image filled with random noise."""
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, (40, 100, 3), dtype=np.uint8)


@pytest.fixture
def slide_scene() -> tuple[np.ndarray, np.ndarray]:
    """A 200x200 black background with a 20x20 textured patch at (50, 50),
    and the opaque RGBA piece cut from it."""
    bg = np.zeros((200, 200, 3), dtype=np.uint8)
    patch = np.zeros((20, 20, 3), dtype=np.uint8)
    cv2.circle(patch, (10, 10), 6, (255, 255, 255), -1)
    cv2.rectangle(patch, (2, 2), (7, 5), (200, 200, 200), -1)
    bg[50:70, 50:70] = patch
    piece = np.dstack([patch, np.full((20, 20), 255, dtype=np.uint8)])
    return piece, bg

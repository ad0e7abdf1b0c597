"""
core/models.py
--------------
Central data-transfer objects (dataclasses) used throughout capsolve.
All fields are intentionally kept plain Python types / numpy arrays for
easy serialisation and cross-module use without circular imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

Raster = np.ndarray
"""Decoded image, shape (H, W, 3) RGB or (H, W, 4) RGBA, dtype uint8."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@dataclass
class CharacterProbability:
    """Per-position probabilities over a charset (or a restriction of it)."""

    charset: list[str]
    """Tokens the columns of ``probability`` refer to."""

    probability: list[list[float]]
    """One row per decoded position; ``len(row) == len(charset)``."""

    text: Optional[str] = field(default=None, compare=False)
    """Best-guess text, filled in lazily by :meth:`get_text`."""

    def get_text(self) -> str:
        """Arg-max token per row, concatenated. Cached after the first call."""
        if self.text is None:
            tokens = []
            for row in self.probability:
                arr = np.asarray(row)
                # last maximum wins on ties
                idx = len(arr) - 1 - int(np.argmax(arr[::-1]))
                tokens.append(self.charset[idx])
            self.text = "".join(tokens)
        return self.text


# ---------------------------------------------------------------------------
# Detection / slide
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BBox:
    """Axis-aligned box in original-image pixel coordinates (inclusive)."""

    x1: int
    y1: int
    x2: int
    y2: int

    def as_list(self) -> list[int]:
        return [self.x1, self.y1, self.x2, self.y2]


@dataclass(frozen=True)
class SlideBBox:
    """Slide-match result.

    ``target_x``/``target_y`` locate the piece's opaque region inside the
    piece image; ``x1..y2`` locate the match inside the background.
    """

    target_x: int
    target_y: int
    x1: int
    y1: int
    x2: int
    y2: int

    @property
    def target(self) -> BBox:
        return BBox(self.x1, self.y1, self.x2, self.y2)


# ---------------------------------------------------------------------------
# Service responses
# ---------------------------------------------------------------------------

@dataclass
class OcrResult:
    text: str
    probability: Optional[list[list[float]]] = None


@dataclass
class SlideResult:
    target: list[int]
    """``[x1, y1, x2, y2]`` of the match in the background image."""

    target_x: int
    target_y: int

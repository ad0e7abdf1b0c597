"""
processing/slide.py
-------------------
Slider-puzzle alignment.  Pure image geometry, no neural network.

* :func:`slide_match` — crop the piece to its opaque region, Canny both
  images and locate the piece with normalised cross-correlation.
* :func:`simple_slide_match` — same, without the alpha crop.
* :func:`slide_comparison` — compare a background with and without the gap
  and report where the first column of differing pixels starts.
"""

from __future__ import annotations

import logging
from typing import Optional

import cv2
import numpy as np

from capsolve.core.config import SlideConfig
from capsolve.core.exceptions import DimensionError
from capsolve.core.models import Raster, SlideBBox
from capsolve.processing.imaging import decode_image, has_alpha, to_gray, to_rgb

logger = logging.getLogger(__name__)

_DEFAULT = SlideConfig()
_EDGE_SIGMA = 1.4


def _as_raster(image: bytes | Raster) -> Raster:
    return decode_image(image) if isinstance(image, (bytes, bytearray)) else image


def _require_fits(target: Raster, background: Raster) -> None:
    th, tw = target.shape[:2]
    bh, bw = background.shape[:2]
    if bw < tw or bh < th:
        raise DimensionError(f"Background {bw}x{bh} is smaller than target {tw}x{th}")


def opaque_bbox(image: Raster) -> Optional[tuple[int, int, int, int]]:
    """``(x, y, w, h)`` of the pixels with alpha != 0, or None if there are none.

    Images without an alpha channel are fully opaque.
    """
    h, w = image.shape[:2]
    if not has_alpha(image):
        return 0, 0, w, h
    ys, xs = np.nonzero(image[:, :, 3])
    if xs.size == 0:
        return None
    x0, y0 = int(xs.min()), int(ys.min())
    return x0, y0, int(xs.max()) - x0 + 1, int(ys.max()) - y0 + 1


def edge_map(image: Raster, config: SlideConfig = _DEFAULT) -> np.ndarray:
    """Canny edges of the luma, after a sigma-1.4 Gaussian blur, L2 gradient."""
    smoothed = cv2.GaussianBlur(to_gray(image), (0, 0), _EDGE_SIGMA)
    return cv2.Canny(smoothed, config.canny_low, config.canny_high, L2gradient=True)


def _match(
    template: Raster,
    background: Raster,
    target_x: int,
    target_y: int,
    config: SlideConfig,
) -> SlideBBox:
    t_edge = edge_map(template, config)
    b_edge = edge_map(background, config)
    result = cv2.matchTemplate(b_edge, t_edge, cv2.TM_CCORR_NORMED)
    _, max_val, _, (x, y) = cv2.minMaxLoc(result)
    th, tw = t_edge.shape[:2]
    logger.debug("Slide match at (%d, %d), score=%.4f", x, y, max_val)
    return SlideBBox(target_x=target_x, target_y=target_y, x1=x, y1=y, x2=x + tw, y2=y + th)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def slide_match(
    target: bytes | Raster,
    background: bytes | Raster,
    config: SlideConfig = _DEFAULT,
) -> SlideBBox:
    """Locate a transparent-background puzzle piece in *background*.

    Raises:
        DimensionError: If the background is smaller than the piece.
    """
    target = _as_raster(target)
    background = _as_raster(background)
    _require_fits(target, background)

    bbox = opaque_bbox(target)
    if bbox is None:
        crop, tx, ty = target, 0, 0
    else:
        tx, ty, cw, ch = bbox
        crop = target[ty : ty + ch, tx : tx + cw]

    return _match(crop, background, tx, ty, config)


def simple_slide_match(
    target: bytes | Raster,
    background: bytes | Raster,
    config: SlideConfig = _DEFAULT,
) -> SlideBBox:
    """Like :func:`slide_match` but matches the whole piece image."""
    target = _as_raster(target)
    background = _as_raster(background)
    _require_fits(target, background)
    return _match(target, background, 0, 0, config)


def slide_comparison(
    target: bytes | Raster,
    background: bytes | Raster,
    config: SlideConfig = _DEFAULT,
) -> tuple[int, int]:
    """Return ``(x, y)`` where the gap starts, or ``(0, 0)`` if none is found.

    A pixel differs when any RGB channel differs by more than
    ``diff_threshold``.  Columns are scanned left to right, rows top to
    bottom; the first column whose running count reaches
    ``diff_min_pixels`` wins, reported ``diff_min_pixels`` rows above the
    pixel that completed the count.

    Raises:
        DimensionError: If the two images differ in size.
    """
    a = to_rgb(_as_raster(target)).astype(np.int16)
    b = to_rgb(_as_raster(background)).astype(np.int16)
    if a.shape[:2] != b.shape[:2]:
        raise DimensionError(
            f"Image dimensions differ: {a.shape[1]}x{a.shape[0]} vs {b.shape[1]}x{b.shape[0]}"
        )

    different = np.any(np.abs(a - b) > config.diff_threshold, axis=2)
    counts = np.cumsum(different, axis=0)
    hits = counts >= config.diff_min_pixels

    columns = np.nonzero(hits.any(axis=0))[0]
    if columns.size == 0:
        return 0, 0
    x = int(columns[0])
    y = int(np.argmax(hits[:, x]))
    return x, max(y - config.diff_min_pixels, 0)

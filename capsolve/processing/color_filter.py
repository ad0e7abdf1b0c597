"""
processing/color_filter.py
--------------------------
HSV colour isolation: keeps pixels inside one or more HSV ranges and
paints everything else white.

HSV uses the OpenCV discretisation: hue in [0, 180] (degrees / 2),
saturation and value in [0, 255].  The conversion is done here rather than
with ``cv2.cvtColor`` so that rounding (half-up) and the red-sector
``fmod`` match the ranges the models were tuned against.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Sequence, Union

import numpy as np

from capsolve.core.exceptions import InvalidRequestError
from capsolve.core.models import Raster

logger = logging.getLogger(__name__)

HSV = tuple[int, int, int]

_HSV_MAX = (180, 255, 255)


@dataclass(frozen=True)
class HSVRange:
    """Inclusive lower/upper HSV bounds."""

    lower: HSV
    upper: HSV

    def __post_init__(self) -> None:
        for bound in (self.lower, self.upper):
            if len(bound) != 3:
                raise InvalidRequestError(f"HSV bound must have 3 components, got {bound!r}")
            for value, limit in zip(bound, _HSV_MAX):
                if not 0 <= value <= limit:
                    raise InvalidRequestError(f"HSV bound {bound!r} outside {_HSV_MAX}")

    def contains(self, hsv: np.ndarray) -> np.ndarray:
        """Boolean mask of the pixels of *hsv* (H, W, 3) inside this range."""
        lo = np.asarray(self.lower, dtype=np.uint8)
        hi = np.asarray(self.upper, dtype=np.uint8)
        return np.all((hsv >= lo) & (hsv <= hi), axis=2)


class Color(str, Enum):
    RED = "red"
    BLUE = "blue"
    GREEN = "green"
    YELLOW = "yellow"
    ORANGE = "orange"
    PURPLE = "purple"
    CYAN = "cyan"
    BLACK = "black"
    WHITE = "white"
    GRAY = "gray"

    @classmethod
    def parse(cls, name: str) -> "Color":
        try:
            return cls(name.lower())
        except ValueError as exc:
            raise InvalidRequestError(f"Unknown color: {name}") from exc

    def hsv_ranges(self) -> list[HSVRange]:
        return [HSVRange(lo, hi) for lo, hi in _COLOR_RANGES[self]]


_COLOR_RANGES: dict[Color, list[tuple[HSV, HSV]]] = {
    Color.RED: [((0, 50, 50), (10, 255, 255)), ((170, 50, 50), (180, 255, 255))],
    Color.BLUE: [((100, 50, 50), (140, 255, 255))],
    Color.GREEN: [((40, 50, 50), (80, 255, 255))],
    Color.YELLOW: [((20, 50, 50), (40, 255, 255))],
    Color.ORANGE: [((10, 50, 50), (20, 255, 255))],
    Color.PURPLE: [((140, 50, 50), (170, 255, 255))],
    Color.CYAN: [((80, 50, 50), (100, 255, 255))],
    Color.BLACK: [((0, 0, 0), (180, 255, 30))],
    Color.WHITE: [((0, 0, 200), (180, 30, 255))],
    Color.GRAY: [((0, 0, 30), (180, 30, 200))],
}


# ---------------------------------------------------------------------------
# HSV conversion
# ---------------------------------------------------------------------------

def rgb_to_hsv(image: Raster) -> np.ndarray:
    """Convert an RGB(A) raster to quantised HSV, shape (H, W, 3) uint8."""
    rgb = image[:, :, :3].astype(np.float32) / np.float32(255.0)
    r, g, b = rgb[:, :, 0], rgb[:, :, 1], rgb[:, :, 2]

    cmax = rgb.max(axis=2)
    cmin = rgb.min(axis=2)
    delta = cmax - cmin
    safe = np.where(delta == 0, np.float32(1.0), delta)

    s = np.where(cmax == 0, np.float32(0.0), delta / np.where(cmax == 0, np.float32(1.0), cmax))

    h = np.where(
        cmax == r,
        60.0 * np.fmod((g - b) / safe, 6.0),
        np.where(cmax == g, 60.0 * ((b - r) / safe + 2.0), 60.0 * ((r - g) / safe + 4.0)),
    ).astype(np.float32)
    h = np.where(delta == 0, np.float32(0.0), h)
    h = np.where(h < 0, h + np.float32(360.0), h)

    hsv = np.empty(image.shape[:2] + (3,), dtype=np.uint8)
    hsv[:, :, 0] = np.minimum(np.floor(h / 2.0 + 0.5), 180)
    hsv[:, :, 1] = np.minimum(np.floor(s * 255.0 + 0.5), 255)
    hsv[:, :, 2] = np.minimum(np.floor(cmax * 255.0 + 0.5), 255)
    return hsv


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------

ColorFilterSpec = Union[str, Sequence[Any]]


class ColorFilter:
    """A set of HSV ranges; pixels matching ANY range are kept."""

    def __init__(self, ranges: Iterable[HSVRange]) -> None:
        self._ranges = tuple(ranges)

    @property
    def ranges(self) -> tuple[HSVRange, ...]:
        return self._ranges

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_color(cls, color: Color | str) -> "ColorFilter":
        if isinstance(color, str):
            color = Color.parse(color)
        return cls(color.hsv_ranges())

    @classmethod
    def parse(cls, spec: ColorFilterSpec) -> "ColorFilter":
        """Build a filter from its request form.

        Accepted forms:
            ``"red"``                                 a single colour name
            ``["red", "blue"]``                       a list of colour names
            ``[[[h, s, v], [h, s, v]], ...]``         explicit HSV ranges

        Raises:
            InvalidRequestError: On unknown colours or malformed ranges.
        """
        if isinstance(spec, ColorFilter):
            return spec
        if isinstance(spec, str):
            return cls.from_color(spec)
        if not isinstance(spec, (list, tuple)) or not spec:
            raise InvalidRequestError(f"Invalid color_filter format: {spec!r}")

        if all(isinstance(item, str) for item in spec):
            ranges: list[HSVRange] = []
            for name in spec:
                ranges.extend(Color.parse(name).hsv_ranges())
            return cls(ranges)

        ranges = []
        for item in spec:
            try:
                lower, upper = item
                ranges.append(HSVRange(tuple(int(v) for v in lower), tuple(int(v) for v in upper)))
            except (TypeError, ValueError) as exc:
                raise InvalidRequestError(f"Invalid HSV range: {item!r}") from exc
        return cls(ranges)

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def mask(self, image: Raster) -> np.ndarray:
        """Boolean (H, W) mask of the pixels this filter keeps."""
        hsv = rgb_to_hsv(image)
        keep = np.zeros(image.shape[:2], dtype=bool)
        for rng in self._ranges:
            keep |= rng.contains(hsv)
        return keep

    def apply(self, image: Raster) -> Raster:
        """Return a copy of *image* with every non-kept pixel set to white."""
        keep = self.mask(image)
        out = image.copy()
        out[~keep] = 255
        logger.debug("Color filter kept %d of %d pixels", int(keep.sum()), keep.size)
        return out

    def __repr__(self) -> str:
        return f"ColorFilter({list(self._ranges)!r})"

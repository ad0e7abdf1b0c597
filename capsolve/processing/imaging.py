"""
processing/imaging.py
---------------------
Raster decode and channel-conversion helpers shared by every stage.

Rasters are RGB(A) ordered even though OpenCV works in BGR(A); the
conversion happens once, here, at decode time.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np

from capsolve.core.exceptions import DecodeError
from capsolve.core.models import Raster

logger = logging.getLogger(__name__)


def decode_image(data: bytes) -> Raster:
    """Decode PNG/JPEG/BMP/... bytes into an RGB or RGBA ``uint8`` raster.

    Raises:
        DecodeError: If *data* is empty or not a supported image.
    """
    if not data:
        raise DecodeError("Empty image data")

    buf = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buf, cv2.IMREAD_UNCHANGED)
    if img is None:
        raise DecodeError("Could not decode image bytes")

    if img.dtype == np.uint16:
        img = (img // 257).astype(np.uint8)
    elif img.dtype != np.uint8:
        img = np.clip(img, 0, 255).astype(np.uint8)

    if img.ndim == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2RGB)
    elif img.shape[2] == 4:
        img = cv2.cvtColor(img, cv2.COLOR_BGRA2RGBA)
    else:
        img = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)

    logger.debug("Decoded image %dx%d, %d channel(s)", img.shape[1], img.shape[0], img.shape[2])
    return img


def encode_png(image: Raster) -> bytes:
    """Encode an RGB(A) raster back to PNG bytes."""
    if image.ndim == 3 and image.shape[2] == 4:
        bgr = cv2.cvtColor(image, cv2.COLOR_RGBA2BGRA)
    elif image.ndim == 3:
        bgr = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
    else:
        bgr = image
    ok, buf = cv2.imencode(".png", bgr)
    if not ok:
        raise DecodeError("PNG encoding failed")
    return buf.tobytes()


def has_alpha(image: Raster) -> bool:
    return image.ndim == 3 and image.shape[2] == 4


def to_rgb(image: Raster) -> Raster:
    """Drop the alpha channel, if any."""
    if has_alpha(image):
        return np.ascontiguousarray(image[:, :, :3])
    return image


def to_gray(image: Raster) -> np.ndarray:
    """Single-channel luma (ITU-R 601 weights), alpha ignored."""
    if image.ndim == 2:
        return image
    code = cv2.COLOR_RGBA2GRAY if has_alpha(image) else cv2.COLOR_RGB2GRAY
    return cv2.cvtColor(image, code)

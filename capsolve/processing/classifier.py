"""
processing/classifier.py
------------------------
Text classification: image -> input tensor -> engine -> character
probabilities.

Steps applied (in order):
1. Colour filter (optional)
2. Resize to the charset geometry (Lanczos)
3. Channel selection: luma, alpha-composited RGB (png_fix) or RGB
4. Normalisation, preset chosen by model identity
5. Channel-major layout, batch of one
6. Inference
7. Softmax per position, renormalised, optionally projected onto a
   restriction
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import cv2
import numpy as np

from capsolve.core.exceptions import ConfigurationError, ShapeError
from capsolve.core.models import CharacterProbability, Raster
from capsolve.inference.engine import InferenceEngine, OnnxEngine, is_custom_model
from capsolve.processing.charset import Charset, RangeSpec, calc_restriction
from capsolve.processing.color_filter import ColorFilter
from capsolve.processing.imaging import decode_image, has_alpha, to_gray, to_rgb

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Normalization:
    mean: tuple[float, ...]
    std: tuple[float, ...]


REFERENCE_NORMALIZATION = Normalization(mean=(0.5,), std=(0.5,))
IMAGENET_RGB = Normalization(mean=(0.485, 0.456, 0.406), std=(0.229, 0.224, 0.225))
IMAGENET_GRAY = Normalization(mean=(0.456,), std=(0.224,))


def normalization_for(charset: Charset, custom: bool) -> Normalization:
    if not custom:
        return REFERENCE_NORMALIZATION
    return IMAGENET_RGB if charset.channel == 3 else IMAGENET_GRAY


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def composite_on_white(image: Raster) -> Raster:
    """RGB copy of *image* with fully transparent pixels turned white."""
    if not has_alpha(image):
        return to_rgb(image)
    rgb = image[:, :, :3].copy()
    rgb[image[:, :, 3] == 0] = 255
    return rgb


def encode(
    image: Raster,
    charset: Charset,
    normalization: Normalization = REFERENCE_NORMALIZATION,
    png_fix: bool = False,
) -> np.ndarray:
    """Build the ``(1, C, H, W)`` float32 input tensor for *image*."""
    h, w = image.shape[:2]
    tw, th = charset.target_size(w, h)
    resized = cv2.resize(image, (tw, th), interpolation=cv2.INTER_LANCZOS4)

    if charset.channel == 1:
        pixels = to_gray(resized)[:, :, np.newaxis]
    elif png_fix:
        pixels = composite_on_white(resized)
    else:
        pixels = to_rgb(resized)

    mean = np.asarray(normalization.mean, dtype=np.float32)
    std = np.asarray(normalization.std, dtype=np.float32)
    values = (pixels.astype(np.float32) / np.float32(255.0) - mean) / std

    tensor = np.ascontiguousarray(values.transpose(2, 0, 1)[np.newaxis], dtype=np.float32)
    logger.debug("Encoded %dx%d image to tensor %s", w, h, tensor.shape)
    return tensor


def denormalize(tensor: np.ndarray, normalization: Normalization) -> np.ndarray:
    """Inverse of the normalisation step: ``(1, C, H, W)`` -> ``(H, W, C)`` 0..255."""
    mean = np.asarray(normalization.mean, dtype=np.float32)
    std = np.asarray(normalization.std, dtype=np.float32)
    values = tensor[0].transpose(1, 2, 0)
    return (values * std + mean) * 255.0


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def decode(
    output: np.ndarray,
    charset: Sequence[str],
    restriction: Optional[Sequence[str]] = None,
) -> CharacterProbability:
    """Turn a raw ``(positions, 1, len(charset))`` output into probabilities.

    The softmax is applied without max-subtraction and the result divided
    by its per-position sum once more; both are kept exactly as the models
    were validated with.  Restriction tokens missing from *charset* get the
    ``-1.0`` sentinel.

    Raises:
        ShapeError: If *output* does not match the layout above.
    """
    if output.ndim != 3 or output.shape[1] != 1 or output.shape[2] != len(charset):
        raise ShapeError(
            f"Expected output shape (N, 1, {len(charset)}), got {tuple(output.shape)}"
        )

    exp = np.exp(output.astype(np.float32))
    softmax = exp / exp.sum(axis=2, keepdims=True)
    prob = softmax / softmax.sum(axis=2, keepdims=True)
    rows = prob[:, 0, :]

    if not restriction:
        return CharacterProbability(charset=list(charset), probability=rows.tolist())

    lookup = {token: i for i, token in reversed(list(enumerate(charset)))}
    indices = np.array([lookup.get(token, -1) for token in restriction], dtype=np.int64)
    projected = np.where(indices >= 0, rows[:, np.maximum(indices, 0)], np.float32(-1.0))
    return CharacterProbability(charset=list(restriction), probability=projected.tolist())


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

class Classifier:
    """A classification model: engine + charset + normalisation preset."""

    def __init__(
        self,
        engine: InferenceEngine,
        charset: Optional[Charset],
        custom: bool = False,
        default_range: Optional[RangeSpec] = None,
    ) -> None:
        self._engine = engine
        self._charset = charset
        self._custom = custom
        self._default_restriction: list[str] = (
            calc_restriction(default_range, charset) if default_range is not None else []
        )

    @classmethod
    def from_files(
        cls,
        model_path: str | Path,
        charset_path: str | Path | None = None,
        default_range: Optional[RangeSpec] = None,
    ) -> "Classifier":
        """Load an ONNX model and the charset JSON beside it."""
        model_path = Path(model_path)
        if not model_path.exists():
            raise ConfigurationError(f"OCR model not found at {model_path}")
        try:
            model = model_path.read_bytes()
        except OSError as exc:
            raise ConfigurationError(f"Cannot read OCR model {model_path}: {exc}") from exc
        charset = Charset.from_file(charset_path or model_path.with_suffix(".json"))
        custom = is_custom_model(model)
        logger.info("OCR model loaded from %s (custom=%s)", model_path, custom)
        return cls(OnnxEngine(model), charset, custom=custom, default_range=default_range)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def charset(self) -> Optional[Charset]:
        return self._charset

    @property
    def custom(self) -> bool:
        return self._custom

    @property
    def default_restriction(self) -> list[str]:
        return list(self._default_restriction)

    @property
    def normalization(self) -> Normalization:
        return normalization_for(self._require_charset(), self._custom)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def calc_ranges(self, spec: RangeSpec) -> list[str]:
        return calc_restriction(spec, self._charset)

    def classification_probability(
        self,
        image: bytes | Raster,
        png_fix: bool = False,
        color_filter: Optional[ColorFilter] = None,
        restriction: Optional[Sequence[str]] = None,
    ) -> CharacterProbability:
        """Full path from image to :class:`CharacterProbability`.

        *restriction* overrides the classifier's default restriction; pass
        an already-computed token list (see :meth:`calc_ranges`).
        """
        charset = self._require_charset()
        raster = decode_image(image) if isinstance(image, (bytes, bytearray)) else image
        if color_filter is not None:
            raster = color_filter.apply(raster)

        tensor = encode(raster, charset, normalization_for(charset, self._custom), png_fix=png_fix)
        output = self._engine.run(tensor)

        tokens = restriction if restriction is not None else self._default_restriction
        return decode(output, charset.charset, tokens)

    def classification(
        self,
        image: bytes | Raster,
        png_fix: bool = False,
        color_filter: Optional[ColorFilter] = None,
    ) -> str:
        return self.classification_probability(image, png_fix, color_filter).get_text()

    def _require_charset(self) -> Charset:
        if self._charset is None:
            raise ConfigurationError("Classification requires a loaded charset")
        return self._charset

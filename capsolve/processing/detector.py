"""
processing/detector.py
----------------------
Anchor-free (YOLOX-style) object detector post-processing.

Pipeline
--------
1. **Letterbox** — resize by ``gain = min(W/w, H/h)`` and paste top-left on
   a grey ``W x H`` canvas.  No centring.
2. **Raw tensor** — RGB, channel-major, unnormalised 0..255 floats.
3. **Grid decode** — every output row ``[cx, cy, w_log, h_log, obj, cls]``
   maps to a grid cell and stride of one feature-map level.
4. **Threshold** — ``score = obj * cls``; rows below the score threshold
   are dropped.
5. **NMS** — greedy, pixel-inclusive (+1) IoU.
6. **Clamp** — back in original-image coordinates, inside the image.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import cv2
import numpy as np

from capsolve.core.config import DetectionConfig
from capsolve.core.exceptions import ShapeError
from capsolve.core.models import BBox, Raster
from capsolve.inference.engine import InferenceEngine, OnnxEngine
from capsolve.processing.imaging import decode_image, to_rgb

logger = logging.getLogger(__name__)

_ROW_WIDTH = 6


# ---------------------------------------------------------------------------
# Grid / stride tables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GridTable:
    """Per output row: originating grid cell and stride."""

    grids: np.ndarray
    """Shape (N, 2), columns ``(gridX, gridY)``."""

    strides: np.ndarray
    """Shape (N,)."""

    def __len__(self) -> int:
        return len(self.strides)


@functools.lru_cache(maxsize=None)
def grid_table(width: int, height: int, strides: tuple[int, ...]) -> GridTable:
    """Build (once per geometry) the row -> cell/stride lookup.

    Levels are laid out in *strides* order; within a level cells are
    row-major (``gridY`` outer, ``gridX`` inner).
    """
    grids = []
    expanded = []
    for stride in strides:
        hsize, wsize = height // stride, width // stride
        ys, xs = np.meshgrid(np.arange(hsize), np.arange(wsize), indexing="ij")
        grids.append(np.stack((xs.ravel(), ys.ravel()), axis=1))
        expanded.append(np.full(hsize * wsize, stride))
    table = GridTable(
        grids=np.concatenate(grids).astype(np.float32),
        strides=np.concatenate(expanded).astype(np.float32),
    )
    table.grids.setflags(write=False)
    table.strides.setflags(write=False)
    logger.debug("Grid table built for %dx%d strides=%s: %d rows", width, height, strides, len(table))
    return table


# ---------------------------------------------------------------------------
# NMS
# ---------------------------------------------------------------------------

def box_iou(box: np.ndarray, others: np.ndarray) -> np.ndarray:
    """IoU of *box* (4,) against *others* (N, 4), +1 pixel-inclusive areas."""
    xx1 = np.maximum(box[0], others[:, 0])
    yy1 = np.maximum(box[1], others[:, 1])
    xx2 = np.minimum(box[2], others[:, 2])
    yy2 = np.minimum(box[3], others[:, 3])
    w = np.maximum(xx2 - xx1 + 1.0, 0.0)
    h = np.maximum(yy2 - yy1 + 1.0, 0.0)
    inter = w * h
    area = (box[2] - box[0] + 1.0) * (box[3] - box[1] + 1.0)
    areas = (others[:, 2] - others[:, 0] + 1.0) * (others[:, 3] - others[:, 1] + 1.0)
    return inter / (area + areas - inter)


def nms(boxes: np.ndarray, scores: np.ndarray, threshold: float) -> list[int]:
    """Greedy NMS; returns kept indices, best score first.

    Ties in score keep their input order.
    """
    order = [int(i) for i in np.argsort(-scores, kind="stable")]
    keep: list[int] = []
    while order:
        current = order.pop(0)
        keep.append(current)
        if not order:
            break
        rest = np.asarray(order)
        ious = box_iou(boxes[current], boxes[rest])
        order = [int(i) for i, iou in zip(rest, ious) if iou <= threshold]
    return keep


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

class DetectionDecoder:
    """Letterbox encoder + YOLOX grid decoder around an inference engine."""

    def __init__(self, engine: InferenceEngine, config: DetectionConfig | None = None) -> None:
        self._engine = engine
        self._cfg = config or DetectionConfig()
        self._table = grid_table(
            self._cfg.input_width, self._cfg.input_height, tuple(self._cfg.strides)
        )

    @classmethod
    def from_file(cls, path: str | Path, config: DetectionConfig | None = None) -> "DetectionDecoder":
        engine = OnnxEngine.from_file(path)
        logger.info("Detection model loaded from %s", path)
        return cls(engine, config)

    @property
    def table(self) -> GridTable:
        return self._table

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def detect(self, image: bytes | Raster) -> list[BBox]:
        """Detect objects; boxes are in the original image's coordinates."""
        raster = decode_image(image) if isinstance(image, (bytes, bytearray)) else image
        h, w = raster.shape[:2]
        tensor, gain = self.preprocess(raster)
        output = self._engine.run(tensor)
        return self.postprocess(output, gain, w, h)

    def preprocess(self, image: Raster) -> tuple[np.ndarray, float]:
        """Letterbox *image*; return ``((1, 3, H, W) tensor, gain)``."""
        mw, mh = self._cfg.input_width, self._cfg.input_height
        h, w = image.shape[:2]
        gain = min(np.float32(mw) / np.float32(w), np.float32(mh) / np.float32(h))
        rw = max(1, int(w * gain))
        rh = max(1, int(h * gain))

        resized = cv2.resize(to_rgb(image), (rw, rh), interpolation=cv2.INTER_LINEAR)
        canvas = np.full((mh, mw, 3), self._cfg.pad_value, dtype=np.uint8)
        canvas[: min(rh, mh), : min(rw, mw)] = resized[:mh, :mw]

        tensor = np.ascontiguousarray(canvas.transpose(2, 0, 1)[np.newaxis], dtype=np.float32)
        return tensor, float(gain)

    def postprocess(self, output: np.ndarray, gain: float, width: int, height: int) -> list[BBox]:
        """Decode, threshold, NMS and clamp a raw model output."""
        if output.size % _ROW_WIDTH:
            raise ShapeError(f"Detection output size {output.size} is not a multiple of {_ROW_WIDTH}")
        rows = output.reshape(-1, _ROW_WIDTH)
        if len(rows) != len(self._table):
            raise ShapeError(
                f"Detection output has {len(rows)} rows, grid expects {len(self._table)}"
            )

        scores = rows[:, 4] * rows[:, 5]
        selected = np.nonzero(scores >= self._cfg.score_threshold)[0]
        if selected.size == 0:
            return []

        boxes = self._decode_boxes(rows[selected], selected, gain)
        keep = nms(boxes, scores[selected], self._cfg.nms_threshold)
        logger.debug("Detection: %d candidates, %d after NMS", selected.size, len(keep))
        return [self._clamp(boxes[i], width, height) for i in keep]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _decode_boxes(self, rows: np.ndarray, indices: np.ndarray, gain: float) -> np.ndarray:
        grids = self._table.grids[indices]
        strides = self._table.strides[indices]
        cx = (rows[:, 0] + grids[:, 0]) * strides
        cy = (rows[:, 1] + grids[:, 1]) * strides
        bw = np.exp(rows[:, 2]) * strides
        bh = np.exp(rows[:, 3]) * strides
        corners = np.stack((cx - bw / 2.0, cy - bh / 2.0, cx + bw / 2.0, cy + bh / 2.0), axis=1)
        return corners / np.float32(gain)

    @staticmethod
    def _clamp(box: Sequence[float], width: int, height: int) -> BBox:
        x1, y1, x2, y2 = (float(v) for v in box)
        return BBox(
            x1=int(min(max(x1, 0.0), width - 1)),
            y1=int(min(max(y1, 0.0), height - 1)),
            x2=int(min(max(x2, 0.0), width - 1)),
            y2=int(min(max(y2, 0.0), height - 1)),
        )

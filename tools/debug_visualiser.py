"""
tools/debug_visualiser.py
--------------------------
Headless debug tool: runs detection or slide matching on an image and saves
an annotated copy showing what the pipeline found.

Outputs (written to ``data/debug/<run_timestamp>/`` unless overridden):
  * ``det_annotated.png``    — input with every detected box
  * ``slide_annotated.png``  — background with the matched piece position
  * ``slide_edges.png``      — Canny edge maps of piece and background side by side

Usage:
    python -m tools.debug_visualiser det --image captcha.png
    python -m tools.debug_visualiser slide --target piece.png --background bg.png
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

import click
import cv2
import numpy as np

# Bootstrap logging before importing capsolve modules
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
logger = logging.getLogger(__name__)

from capsolve.core.config import load_config
from capsolve.core.models import BBox, SlideBBox
from capsolve.processing.detector import DetectionDecoder
from capsolve.processing.imaging import decode_image, to_rgb
from capsolve.processing.slide import edge_map, opaque_bbox, simple_slide_match, slide_match


def _out_dir(output_dir: str | None) -> Path:
    ts = time.strftime("%Y%m%dT%H%M%S")
    out = Path(output_dir) if output_dir else Path("data/debug") / ts
    out.mkdir(parents=True, exist_ok=True)
    logger.info("Debug output → %s", out)
    return out


def _draw_boxes(image: np.ndarray, boxes: list[BBox]) -> np.ndarray:
    """Draw numbered green boxes on a BGR copy of *image*."""
    out = cv2.cvtColor(to_rgb(image), cv2.COLOR_RGB2BGR)
    for i, b in enumerate(boxes):
        cv2.rectangle(out, (b.x1, b.y1), (b.x2, b.y2), (0, 255, 0), 1)
        cv2.putText(out, str(i), (b.x1 + 2, b.y1 + 12), cv2.FONT_HERSHEY_SIMPLEX, 0.4, (0, 0, 255), 1)
    return out


def _draw_slide(background: np.ndarray, res: SlideBBox) -> np.ndarray:
    out = cv2.cvtColor(to_rgb(background), cv2.COLOR_RGB2BGR)
    cv2.rectangle(out, (res.x1, res.y1), (res.x2, res.y2), (0, 0, 255), 2)
    label = f"x={res.x1} y={res.y1}"
    cv2.putText(out, label, (res.x1, max(12, res.y1 - 4)), cv2.FONT_HERSHEY_SIMPLEX, 0.4, (0, 0, 255), 1)
    return out


@click.group()
def main() -> None:
    """Save annotated debug images for detection and slide matching."""


@main.command("det")
@click.option("--image", required=True, type=click.Path(exists=True), help="Input image path.")
@click.option("--config", "config_path", default=None, type=click.Path(), help="YAML config.")
@click.option("--output-dir", default=None, type=click.Path(), help="Output directory override.")
def det_cmd(image, config_path, output_dir):
    """Run the detector on IMAGE and draw its boxes."""
    cfg = load_config(config_path)
    out_dir = _out_dir(output_dir)

    raster = decode_image(Path(image).read_bytes())
    decoder = DetectionDecoder.from_file(cfg.det_model_path(), cfg.detection)
    boxes = decoder.detect(raster)
    for i, b in enumerate(boxes):
        logger.info("box %d: %s", i, b.as_list())

    cv2.imwrite(str(out_dir / "det_annotated.png"), _draw_boxes(raster, boxes))
    logger.info("%d box(es) written to %s", len(boxes), out_dir / "det_annotated.png")


@main.command("slide")
@click.option("--target", required=True, type=click.Path(exists=True), help="Puzzle piece image.")
@click.option("--background", required=True, type=click.Path(exists=True), help="Background image.")
@click.option("--simple/--no-simple", default=False, show_default=True, help="Skip the transparent-region crop.")
@click.option("--config", "config_path", default=None, type=click.Path(), help="YAML config.")
@click.option("--output-dir", default=None, type=click.Path(), help="Output directory override.")
def slide_cmd(target, background, simple, config_path, output_dir):
    """Run slide matching and draw the matched piece position."""
    cfg = load_config(config_path)
    out_dir = _out_dir(output_dir)

    piece = decode_image(Path(target).read_bytes())
    bg = decode_image(Path(background).read_bytes())
    match = simple_slide_match if simple else slide_match
    res = match(piece, bg, cfg.slide)
    logger.info("Piece origin (%d, %d) matched at %s", res.target_x, res.target_y, res.target.as_list())

    cv2.imwrite(str(out_dir / "slide_annotated.png"), _draw_slide(bg, res))

    # Edge maps side by side, piece padded to the background height
    crop = piece
    bbox = None if simple else opaque_bbox(piece)
    if bbox is not None:
        x, y, w, h = bbox
        crop = piece[y : y + h, x : x + w]
    t_edge = edge_map(crop, cfg.slide)
    b_edge = edge_map(bg, cfg.slide)
    pad = np.zeros((b_edge.shape[0], t_edge.shape[1]), dtype=np.uint8)
    pad[: t_edge.shape[0]] = t_edge
    sep = np.full((b_edge.shape[0], 4), 128, dtype=np.uint8)
    cv2.imwrite(str(out_dir / "slide_edges.png"), np.hstack([pad, sep, b_edge]))


if __name__ == "__main__":
    main()

"""
cli.py
------
Command-line interface for one-shot recognition.

Commands:
    capsolve ocr               Read the text in a captcha image
    capsolve det               Detect object bounding boxes
    capsolve slide-match       Locate a puzzle piece in a background
    capsolve slide-comparison  Find the slider gap by image difference
    capsolve status            Show which features load with the config
    capsolve batch             OCR every image in a directory into a CSV

Every command prints a JSON envelope ``{"code", "msg", "data"}``.
"""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

import click
from tqdm import tqdm

from capsolve.core.config import AppConfig, load_config
from capsolve.core.exceptions import CapsolveError
from capsolve.service import RecognitionService

logger = logging.getLogger(__name__)

_IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".bmp", ".webp", ".tif", ".tiff"}


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%H:%M:%S",
    )


def _service(config_path: Optional[str], log_level: Optional[str], **features: bool) -> RecognitionService:
    """Load config, set up logging and enable only the requested features."""
    try:
        cfg = load_config(config_path)
    except CapsolveError as exc:
        raise click.ClickException(str(exc)) from exc
    _setup_logging(log_level or cfg.logging.log_level)

    service = RecognitionService(cfg, slide_enabled=features.get("slide", False))
    service.toggle(ocr=features.get("ocr"), det=features.get("det"))
    return service


def _emit(data: Any) -> None:
    click.echo(json.dumps({"code": 200, "msg": "success", "data": data}, ensure_ascii=False))


def _parse_color_filter(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _read(path: str) -> bytes:
    return Path(path).read_bytes()


_config_option = click.option(
    "--config", "config_path", default=None, type=click.Path(), help="YAML config (default: config/default.yaml)."
)
_log_option = click.option("--log-level", default=None, help="Logging verbosity (default: from config).")


@click.group()
def main() -> None:
    """capsolve -- captcha recognition oracle CLI."""


# ---------------------------------------------------------------------------
# capsolve ocr
# ---------------------------------------------------------------------------

@main.command("ocr")
@click.argument("image", type=click.Path(exists=True, dir_okay=False))
@click.option("--png-fix/--no-png-fix", default=False, show_default=True, help="Composite transparent pixels on white.")
@click.option("--probability/--no-probability", default=False, show_default=True, help="Include per-position probabilities.")
@click.option("--charset-range", default=None, help="Preset 0-7 or a literal set of characters.")
@click.option("--color-filter", default=None, help='Colour name, JSON list of names, or JSON HSV ranges.')
@_config_option
@_log_option
def ocr_cmd(image, png_fix, probability, charset_range, color_filter, config_path, log_level):
    """Read the text in IMAGE."""
    service = _service(config_path, log_level, ocr=True)
    try:
        result = service.ocr(
            _read(image),
            png_fix=png_fix,
            probability=probability,
            charset_range=charset_range,
            color_filter=_parse_color_filter(color_filter),
        )
    except CapsolveError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(asdict(result))


# ---------------------------------------------------------------------------
# capsolve det
# ---------------------------------------------------------------------------

@main.command("det")
@click.argument("image", type=click.Path(exists=True, dir_okay=False))
@_config_option
@_log_option
def det_cmd(image, config_path, log_level):
    """Detect objects in IMAGE."""
    service = _service(config_path, log_level, det=True)
    try:
        bboxes = service.detect(_read(image))
    except CapsolveError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit({"bboxes": bboxes})


# ---------------------------------------------------------------------------
# capsolve slide-match / slide-comparison
# ---------------------------------------------------------------------------

@main.command("slide-match")
@click.argument("target", type=click.Path(exists=True, dir_okay=False))
@click.argument("background", type=click.Path(exists=True, dir_okay=False))
@click.option("--simple/--no-simple", default=False, show_default=True, help="Skip the transparent-region crop.")
@_config_option
@_log_option
def slide_match_cmd(target, background, simple, config_path, log_level):
    """Locate the TARGET puzzle piece inside BACKGROUND."""
    service = _service(config_path, log_level, slide=True)
    try:
        result = service.slide_match(_read(target), _read(background), simple=simple)
    except CapsolveError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit(asdict(result))


@main.command("slide-comparison")
@click.argument("target", type=click.Path(exists=True, dir_okay=False))
@click.argument("background", type=click.Path(exists=True, dir_okay=False))
@_config_option
@_log_option
def slide_comparison_cmd(target, background, config_path, log_level):
    """Find where TARGET (with gap) starts to differ from BACKGROUND."""
    service = _service(config_path, log_level, slide=True)
    try:
        x, y = service.slide_comparison(_read(target), _read(background))
    except CapsolveError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit({"x": x, "y": y})


# ---------------------------------------------------------------------------
# capsolve status
# ---------------------------------------------------------------------------

@main.command("status")
@_config_option
@_log_option
def status_cmd(config_path, log_level):
    """Load the models enabled in the config and report what is available."""
    try:
        cfg: AppConfig = load_config(config_path)
    except CapsolveError as exc:
        raise click.ClickException(str(exc)) from exc
    _setup_logging(log_level or cfg.logging.log_level)

    service = RecognitionService(cfg)
    service.start()
    _emit(service.status())


# ---------------------------------------------------------------------------
# capsolve batch
# ---------------------------------------------------------------------------

@main.command("batch")
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@click.option("--out", "out_path", required=True, type=click.Path(dir_okay=False), help="CSV file to write.")
@click.option("--png-fix/--no-png-fix", default=False, show_default=True)
@click.option("--charset-range", default=None, help="Preset 0-7 or a literal set of characters.")
@click.option("--color-filter", default=None, help="Colour name, JSON list of names, or JSON HSV ranges.")
@_config_option
@_log_option
def batch_cmd(directory, out_path, png_fix, charset_range, color_filter, config_path, log_level):
    """OCR every image in DIRECTORY; write file,text,error rows to --out."""
    service = _service(config_path, log_level or "WARNING", ocr=True)
    if "ocr" not in service.status()["enabled_features"]:
        raise click.ClickException("OCR model could not be loaded")
    images = sorted(p for p in Path(directory).iterdir() if p.suffix.lower() in _IMAGE_SUFFIXES)
    flt = _parse_color_filter(color_filter)

    failed = 0
    with open(out_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=["file", "text", "error"])
        writer.writeheader()
        for path in tqdm(images, unit="img", dynamic_ncols=True):
            try:
                result = service.ocr(
                    path.read_bytes(), png_fix=png_fix, charset_range=charset_range, color_filter=flt
                )
                writer.writerow({"file": path.name, "text": result.text, "error": ""})
            except CapsolveError as exc:
                failed += 1
                logger.warning("OCR failed for %s: %s", path.name, exc)
                writer.writerow({"file": path.name, "text": "", "error": str(exc)})

    _emit({"images": len(images), "failed": failed, "out": str(out_path)})


if __name__ == "__main__":
    main()

"""
core/config.py
--------------
Loads, validates, and exposes the application config from a YAML file.

Usage:
    from capsolve.core.config import load_config, AppConfig
    cfg = load_config()            # loads config/default.yaml
    cfg = load_config("my.yaml")   # loads a custom file
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator

from capsolve.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_CONFIG = _PROJECT_ROOT / "config" / "default.yaml"


# ---------------------------------------------------------------------------
# Pydantic sub-models
# ---------------------------------------------------------------------------

class ModelsConfig(BaseModel):
    ocr_path: str = "model/common.onnx"
    det_path: str = "model/common_det.onnx"
    charset_range: Optional[str] = None  # default restriction for every OCR call


class FeaturesConfig(BaseModel):
    ocr: bool = True
    det: bool = True
    slide: bool = True


class DetectionConfig(BaseModel):
    input_width: int = Field(416, gt=0)
    input_height: int = Field(416, gt=0)
    strides: list[int] = [8, 16, 32]
    score_threshold: float = Field(0.1, ge=0.0, le=1.0)
    nms_threshold: float = Field(0.45, ge=0.0, le=1.0)
    pad_value: int = Field(114, ge=0, le=255)

    @model_validator(mode="after")
    def strides_divide_input(self) -> "DetectionConfig":
        for s in self.strides:
            if s <= 0 or self.input_width % s or self.input_height % s:
                raise ValueError(f"stride {s} must evenly divide the input size")
        return self


class SlideConfig(BaseModel):
    canny_low: int = 100
    canny_high: int = 200
    diff_threshold: int = Field(80, ge=0, le=255)
    diff_min_pixels: int = Field(5, ge=1)

    @field_validator("canny_high")
    @classmethod
    def high_not_below_low(cls, v: int, info: ValidationInfo) -> int:
        low = info.data.get("canny_low", 0)
        if v < low:
            raise ValueError("canny_high must be >= canny_low")
        return v


class ServiceConfig(BaseModel):
    charset_cache_size: int = Field(10, gt=0)


class LoggingConfig(BaseModel):
    log_level: str = "INFO"


# ---------------------------------------------------------------------------
# Root config model
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    models: ModelsConfig = ModelsConfig()
    features: FeaturesConfig = FeaturesConfig()
    detection: DetectionConfig = DetectionConfig()
    slide: SlideConfig = SlideConfig()
    service: ServiceConfig = ServiceConfig()
    logging: LoggingConfig = LoggingConfig()

    def ocr_model_path(self) -> Path:
        """Resolve the OCR model path relative to project root."""
        return _resolve(self.models.ocr_path)

    def det_model_path(self) -> Path:
        """Resolve the detection model path relative to project root."""
        return _resolve(self.models.det_path)


def _resolve(path: str) -> Path:
    p = Path(path)
    return p if p.is_absolute() else _PROJECT_ROOT / p


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(path: str | Path | None = None) -> AppConfig:
    """Load and validate AppConfig from a YAML file.

    Args:
        path: Explicit path to a YAML file. Defaults to ``config/default.yaml``.

    Returns:
        Validated :class:`AppConfig` instance.

    Raises:
        ConfigurationError: If the file is missing or contains invalid values.
    """
    config_path = Path(path) if path else _DEFAULT_CONFIG

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        raw: dict[str, Any] = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Cannot read {config_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"YAML parse error in {config_path}: {exc}") from exc

    try:
        cfg = AppConfig.model_validate(raw)
    except Exception as exc:
        raise ConfigurationError(f"Invalid configuration values: {exc}") from exc

    logger.info("Configuration loaded from %s", config_path)
    return cfg

"""
service.py
----------
RecognitionService: owns the model instances and exposes the four
recognition operations plus runtime feature toggles.

  bytes
    → Classifier          → OcrResult         (ocr)
    → DetectionDecoder    → [[x1, y1, x2, y2]] (detect)
    → slide_match         → SlideResult       (slide_match)
    → slide_comparison    → (x, y)            (slide_comparison)

Model instances are swapped under a lock; each call takes a reference to
the current instance and releases the lock before doing any work, so a
toggle never waits for a running inference.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Any, Optional

from capsolve.core.config import AppConfig
from capsolve.core.exceptions import CapsolveError, FeatureDisabledError
from capsolve.core.models import OcrResult, SlideResult
from capsolve.processing import slide
from capsolve.processing.classifier import Classifier
from capsolve.processing.color_filter import ColorFilter, ColorFilterSpec
from capsolve.processing.detector import DetectionDecoder

logger = logging.getLogger(__name__)


class RecognitionService:
    """Explicitly owned replacement for process-wide model singletons."""

    def __init__(
        self,
        config: AppConfig,
        classifier: Optional[Classifier] = None,
        detector: Optional[DetectionDecoder] = None,
        slide_enabled: Optional[bool] = None,
    ) -> None:
        self._cfg = config
        self._lock = threading.Lock()
        self._classifier = classifier
        self._detector = detector
        self._slide_enabled = config.features.slide if slide_enabled is None else slide_enabled

        self._cache_lock = threading.Lock()
        self._range_cache: OrderedDict[str, list[str]] = OrderedDict()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Load the models enabled in the config; failures leave the feature off."""
        if self._cfg.features.ocr and self._classifier is None:
            self._try_load("ocr")
        if self._cfg.features.det and self._detector is None:
            self._try_load("det")

    def toggle(
        self,
        ocr: Optional[bool] = None,
        det: Optional[bool] = None,
        slide: Optional[bool] = None,
    ) -> None:
        """Enable (loading on demand) or disable features at runtime."""
        if slide is not None:
            self._slide_enabled = slide
            logger.info("Slide feature %s", "enabled" if slide else "disabled")

        for name, value in (("ocr", ocr), ("det", det)):
            if value is None:
                continue
            if value:
                if self._current(name) is None:
                    self._try_load(name)
            else:
                self._set(name, None)
                logger.info("%s feature disabled", name.upper())

    def status(self) -> dict[str, Any]:
        enabled = []
        if self._current("ocr") is not None:
            enabled.append("ocr")
        if self._current("det") is not None:
            enabled.append("det")
        if self._slide_enabled:
            enabled.append("slide")
        return {"service_status": "running", "enabled_features": enabled}

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def ocr(
        self,
        image: bytes,
        png_fix: bool = False,
        probability: bool = False,
        charset_range: Optional[str | int] = None,
        color_filter: Optional[ColorFilterSpec] = None,
    ) -> OcrResult:
        classifier = self._require("ocr")
        flt = ColorFilter.parse(color_filter) if color_filter is not None else None
        restriction = (
            self._restriction(classifier, charset_range) if charset_range is not None else None
        )

        prob = classifier.classification_probability(
            image, png_fix=png_fix, color_filter=flt, restriction=restriction
        )
        return OcrResult(text=prob.get_text(), probability=prob.probability if probability else None)

    def detect(self, image: bytes) -> list[list[int]]:
        detector = self._require("det")
        return [b.as_list() for b in detector.detect(image)]

    def slide_match(self, target: bytes, background: bytes, simple: bool = False) -> SlideResult:
        self._require_slide()
        match = slide.simple_slide_match if simple else slide.slide_match
        res = match(target, background, self._cfg.slide)
        return SlideResult(target=res.target.as_list(), target_x=res.target_x, target_y=res.target_y)

    def slide_comparison(self, target: bytes, background: bytes) -> tuple[int, int]:
        self._require_slide()
        return slide.slide_comparison(target, background, self._cfg.slide)

    # ------------------------------------------------------------------
    # Charset range cache
    # ------------------------------------------------------------------

    def _restriction(self, classifier: Classifier, spec: str | int) -> list[str]:
        key = str(spec)
        with self._cache_lock:
            cached = self._range_cache.get(key)
            if cached is not None:
                self._range_cache.move_to_end(key)
                return list(cached)

        tokens = classifier.calc_ranges(spec)

        # same lock order as _set; skip the insert if the classifier was swapped meanwhile
        with self._lock, self._cache_lock:
            if self._classifier is classifier:
                self._range_cache[key] = tokens
                self._range_cache.move_to_end(key)
                while len(self._range_cache) > self._cfg.service.charset_cache_size:
                    self._range_cache.popitem(last=False)
        return list(tokens)

    @property
    def cached_ranges(self) -> list[str]:
        with self._cache_lock:
            return list(self._range_cache)

    # ------------------------------------------------------------------
    # Model slots
    # ------------------------------------------------------------------

    def _current(self, name: str) -> Any:
        with self._lock:
            return self._classifier if name == "ocr" else self._detector

    def _set(self, name: str, instance: Any) -> None:
        with self._lock:
            if name == "ocr":
                self._classifier = instance
                # restrictions like preset 7 depend on the loaded charset
                with self._cache_lock:
                    self._range_cache.clear()
            else:
                self._detector = instance

    def _require(self, name: str) -> Any:
        instance = self._current(name)
        if instance is None:
            raise FeatureDisabledError(f"{name.upper()} not enabled")
        return instance

    def _require_slide(self) -> None:
        if not self._slide_enabled:
            raise FeatureDisabledError("Slide feature is disabled")

    def _load(self, name: str) -> Any:
        if name == "ocr":
            return Classifier.from_files(
                self._cfg.ocr_model_path(), default_range=self._cfg.models.charset_range
            )
        return DetectionDecoder.from_file(self._cfg.det_model_path(), self._cfg.detection)

    def _try_load(self, name: str) -> bool:
        try:
            instance = self._load(name)
        except CapsolveError as exc:
            logger.warning("Failed to enable %s: %s", name.upper(), exc)
            return False
        self._set(name, instance)
        logger.info("%s feature enabled", name.upper())
        return True

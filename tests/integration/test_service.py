"""tests/integration/test_service.py — RecognitionService with injected fake engines."""

import math

import numpy as np
import pytest

from capsolve.core.config import AppConfig, ModelsConfig, ServiceConfig
from capsolve.core.exceptions import FeatureDisabledError, InvalidRequestError
from capsolve.processing.classifier import Classifier
from capsolve.processing.detector import DetectionDecoder
from capsolve.service import RecognitionService


def ocr_output(indices, size=6) -> np.ndarray:
    out = np.zeros((len(indices), 1, size), dtype=np.float32)
    for pos, idx in enumerate(indices):
        out[pos, 0, idx] = 5.0
    return out


def det_output() -> np.ndarray:
    out = np.zeros((1, 3549, 6), dtype=np.float32)
    out[0, 0] = (5.0, 5.0, math.log(4.0), math.log(4.0), 1.0, 1.0)
    return out


class TestRecognitionService:
    def setup_method(self):
        self.cfg = AppConfig(
            models=ModelsConfig(ocr_path="/nonexistent/ocr.onnx", det_path="/nonexistent/det.onnx"),
            service=ServiceConfig(charset_cache_size=2),
        )

    def make(self, fake_engine, line_charset, **kwargs):
        self.ocr_engine = fake_engine(ocr_output([1, 4, 0]))
        self.det_engine = fake_engine(det_output())
        classifier = Classifier(self.ocr_engine, line_charset)
        detector = DetectionDecoder(self.det_engine, self.cfg.detection)
        return RecognitionService(self.cfg, classifier=classifier, detector=detector, **kwargs)

    def test_status_lists_enabled_features(self, fake_engine, line_charset):
        service = self.make(fake_engine, line_charset)
        assert service.status() == {"service_status": "running", "enabled_features": ["ocr", "det", "slide"]}

    def test_ocr_text(self, fake_engine, line_charset, sample_rgb, to_png):
        service = self.make(fake_engine, line_charset)
        result = service.ocr(to_png(sample_rgb))
        assert result.text == "a1"
        assert result.probability is None

    def test_ocr_with_probability(self, fake_engine, line_charset, sample_rgb, to_png):
        service = self.make(fake_engine, line_charset)
        result = service.ocr(to_png(sample_rgb), probability=True)
        assert len(result.probability) == 3
        assert all(len(row) == 6 for row in result.probability)

    def test_ocr_charset_range(self, fake_engine, line_charset, sample_rgb, to_png):
        service = self.make(fake_engine, line_charset)
        result = service.ocr(to_png(sample_rgb), charset_range="0", probability=True)
        assert result.text == "1"
        assert len(result.probability[0]) == 11

    def test_ocr_color_filter_whitens_input(self, fake_engine, line_charset, to_png):
        service = self.make(fake_engine, line_charset)
        blue = np.zeros((40, 100, 3), dtype=np.uint8)
        blue[..., 2] = 255
        service.ocr(to_png(blue), color_filter="red")
        assert np.allclose(self.ocr_engine.inputs[-1], 1.0)

    def test_ocr_bad_color_filter(self, fake_engine, line_charset, sample_rgb, to_png):
        service = self.make(fake_engine, line_charset)
        with pytest.raises(InvalidRequestError):
            service.ocr(to_png(sample_rgb), color_filter="teal")

    def test_range_cache_evicts_least_recent(self, fake_engine, line_charset, sample_rgb, to_png):
        service = self.make(fake_engine, line_charset)
        png = to_png(sample_rgb)
        service.ocr(png, charset_range="abc")
        service.ocr(png, charset_range="0")
        service.ocr(png, charset_range="abc")
        service.ocr(png, charset_range="1")
        assert service.cached_ranges == ["abc", "1"]

    def test_detect(self, fake_engine, line_charset, to_png):
        service = self.make(fake_engine, line_charset)
        assert service.detect(to_png(np.zeros((416, 416, 3), dtype=np.uint8))) == [[24, 24, 56, 56]]

    def test_slide_match(self, fake_engine, line_charset, slide_scene, to_png):
        service = self.make(fake_engine, line_charset)
        piece, bg = slide_scene
        result = service.slide_match(to_png(piece), to_png(bg))
        assert abs(result.target[0] - 50) <= 2
        assert (result.target_x, result.target_y) == (0, 0)

    def test_slide_comparison(self, fake_engine, line_charset, to_png):
        service = self.make(fake_engine, line_charset)
        bg = np.zeros((60, 60, 3), dtype=np.uint8)
        gapped = bg.copy()
        gapped[20:40, 30:40] = 255
        assert service.slide_comparison(to_png(gapped), to_png(bg)) == (30, 19)

    def test_disable_ocr(self, fake_engine, line_charset, sample_rgb, to_png):
        service = self.make(fake_engine, line_charset)
        service.ocr(to_png(sample_rgb), charset_range="0")
        service.toggle(ocr=False)
        assert "ocr" not in service.status()["enabled_features"]
        assert service.cached_ranges == []
        with pytest.raises(FeatureDisabledError, match="OCR not enabled"):
            service.ocr(to_png(sample_rgb))

    def test_enable_with_missing_model_stays_disabled(self, fake_engine, line_charset):
        service = self.make(fake_engine, line_charset)
        service.toggle(det=False)
        service.toggle(det=True)
        assert "det" not in service.status()["enabled_features"]

    def test_disable_slide(self, fake_engine, line_charset, slide_scene, to_png):
        service = self.make(fake_engine, line_charset)
        service.toggle(slide=False)
        piece, bg = slide_scene
        with pytest.raises(FeatureDisabledError):
            service.slide_match(to_png(piece), to_png(bg))
        with pytest.raises(FeatureDisabledError):
            service.slide_comparison(to_png(bg), to_png(bg))

    def test_start_with_missing_models(self):
        service = RecognitionService(self.cfg)
        service.start()
        assert service.status()["enabled_features"] == ["slide"]

    def test_unreadable_det_model_leaves_det_off(self, tmp_path):
        model_dir = tmp_path / "det.onnx"
        model_dir.mkdir()
        cfg = AppConfig(models=ModelsConfig(ocr_path=str(tmp_path / "missing.onnx"), det_path=str(model_dir)))
        service = RecognitionService(cfg)
        service.start()
        assert service.status()["enabled_features"] == ["slide"]

    def test_undecodable_charset_leaves_ocr_off(self, tmp_path):
        (tmp_path / "ocr.onnx").write_bytes(b"model")
        (tmp_path / "ocr.json").write_bytes(b"\xff\xfe\xfa")
        cfg = AppConfig(models=ModelsConfig(ocr_path=str(tmp_path / "ocr.onnx"), det_path=str(tmp_path / "x.onnx")))
        service = RecognitionService(cfg)
        service.start()
        service.toggle(ocr=True)
        assert "ocr" not in service.status()["enabled_features"]

    def test_range_not_cached_after_classifier_swap(self, fake_engine, line_charset, sample_rgb, to_png):
        class SwappingClassifier(Classifier):
            def calc_ranges(self, spec):
                tokens = super().calc_ranges(spec)
                service.toggle(ocr=False)
                return tokens

        swapping = SwappingClassifier(fake_engine(ocr_output([4])), line_charset)
        service = RecognitionService(self.cfg, classifier=swapping)
        result = service.ocr(to_png(sample_rgb), charset_range="0")
        assert result.text == "1"
        assert service.cached_ranges == []

"""tests/unit/test_slide.py — Slider-puzzle matching tests."""

import numpy as np
import pytest

from capsolve.core.config import SlideConfig
from capsolve.core.exceptions import DimensionError
from capsolve.processing.slide import edge_map, opaque_bbox, simple_slide_match, slide_comparison, slide_match


def with_margin(piece: np.ndarray, margin: int) -> np.ndarray:
    """Embed an RGBA piece in a transparent border of *margin* pixels."""
    h, w = piece.shape[:2]
    out = np.zeros((h + 2 * margin, w + 2 * margin, 4), dtype=np.uint8)
    out[margin : margin + h, margin : margin + w] = piece
    return out


class TestOpaqueBbox:
    def test_alpha_region(self):
        img = np.zeros((10, 10, 4), dtype=np.uint8)
        img[2:5, 3:8, 3] = 255
        assert opaque_bbox(img) == (3, 2, 5, 3)

    def test_fully_transparent(self):
        assert opaque_bbox(np.zeros((4, 4, 4), dtype=np.uint8)) is None

    def test_no_alpha_channel_is_opaque(self):
        assert opaque_bbox(np.zeros((4, 6, 3), dtype=np.uint8)) == (0, 0, 6, 4)


class TestEdgeMap:
    def test_pixel_noise_is_smoothed_away(self):
        rng = np.random.default_rng(7)
        noise = rng.integers(-40, 41, (60, 60, 1))
        img = np.clip(128 + noise, 0, 255).astype(np.uint8).repeat(3, axis=2)
        assert np.count_nonzero(edge_map(img)) <= 5

    def test_solid_shape_has_edges(self, slide_scene):
        piece, _ = slide_scene
        edges = edge_map(piece)
        assert edges.shape == (20, 20)
        assert np.count_nonzero(edges) > 0


class TestSlideMatch:
    def test_locates_piece(self, slide_scene):
        piece, bg = slide_scene
        res = slide_match(piece, bg)
        assert abs(res.x1 - 50) <= 2
        assert abs(res.y1 - 50) <= 2
        assert res.x2 - res.x1 == 20
        assert res.y2 - res.y1 == 20

    def test_transparent_margin_cropped(self, slide_scene):
        piece, bg = slide_scene
        res = slide_match(with_margin(piece, 5), bg)
        assert (res.target_x, res.target_y) == (5, 5)
        assert abs(res.x1 - 50) <= 2
        assert res.x2 - res.x1 == 20

    def test_accepts_png_bytes(self, slide_scene, to_png):
        piece, bg = slide_scene
        res = slide_match(to_png(piece), to_png(bg))
        assert abs(res.x1 - 50) <= 2

    def test_fully_transparent_piece_reports_origin(self, slide_scene):
        _, bg = slide_scene
        res = slide_match(np.zeros((20, 20, 4), dtype=np.uint8), bg)
        assert (res.target_x, res.target_y) == (0, 0)

    def test_background_smaller_than_piece(self):
        with pytest.raises(DimensionError):
            slide_match(np.zeros((50, 50, 4), dtype=np.uint8), np.zeros((40, 40, 3), dtype=np.uint8))


class TestSimpleSlideMatch:
    def test_locates_piece(self, slide_scene):
        piece, bg = slide_scene
        res = simple_slide_match(piece[:, :, :3], bg)
        assert abs(res.x1 - 50) <= 2
        assert abs(res.y1 - 50) <= 2
        assert (res.target_x, res.target_y) == (0, 0)

    def test_margin_not_cropped(self, slide_scene):
        piece, bg = slide_scene
        res = simple_slide_match(with_margin(piece, 5), bg)
        assert res.x2 - res.x1 == 30

    def test_background_smaller_than_piece(self):
        with pytest.raises(DimensionError):
            simple_slide_match(np.zeros((50, 50, 3), dtype=np.uint8), np.zeros((40, 60, 3), dtype=np.uint8))


class TestSlideComparison:
    def test_identical_images(self, sample_rgb):
        assert slide_comparison(sample_rgb, sample_rgb.copy()) == (0, 0)

    def test_finds_gap(self):
        bg = np.zeros((100, 100, 3), dtype=np.uint8)
        gapped = bg.copy()
        gapped[30:50, 40:60] = 255
        # column 40 reaches five differing pixels at row 34
        assert slide_comparison(gapped, bg) == (40, 29)

    def test_small_differences_ignored(self):
        bg = np.zeros((50, 50, 3), dtype=np.uint8)
        noisy = bg.copy()
        noisy[10:30, 10:30] = 80  # not above the default threshold
        assert slide_comparison(noisy, bg) == (0, 0)

    def test_too_few_pixels_in_column(self):
        bg = np.zeros((50, 50, 3), dtype=np.uint8)
        gapped = bg.copy()
        gapped[10:14, 20] = 255
        assert slide_comparison(gapped, bg) == (0, 0)

    def test_gap_near_top_clamped(self):
        bg = np.zeros((50, 50, 3), dtype=np.uint8)
        gapped = bg.copy()
        gapped[0:10, 7] = 255
        assert slide_comparison(gapped, bg) == (7, 0)

    def test_custom_thresholds(self):
        bg = np.zeros((50, 50, 3), dtype=np.uint8)
        gapped = bg.copy()
        gapped[10:12, 20] = 50
        cfg = SlideConfig(diff_threshold=40, diff_min_pixels=2)
        assert slide_comparison(gapped, bg, cfg) == (20, 9)

    def test_size_mismatch(self):
        with pytest.raises(DimensionError):
            slide_comparison(np.zeros((10, 10, 3), dtype=np.uint8), np.zeros((10, 11, 3), dtype=np.uint8))

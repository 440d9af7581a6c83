"""Tests for the visual diff engine."""

import io

import numpy as np
import pytest
from PIL import Image

from src.visual_ai.diff_engine import (
    VisualDiffEngine,
    analyze_regions,
    classify_change,
    get_severity,
)
from src.visual_ai.errors import DimensionMismatch, ImageDecodeError, ImageTooLarge
from src.visual_ai.models import (
    ChangeType,
    DiffAnalysis,
    DiffOptions,
    Region,
    Severity,
)


class TestCompare:
    """Tests for VisualDiffEngine.compare."""

    def test_identical_images(self, white_png):
        """An image compared with itself is a perfect match."""
        engine = VisualDiffEngine()

        for threshold in (0.0, 0.5, 0.95, 1.0):
            result = engine.compare(white_png, white_png, DiffOptions(threshold=threshold))
            assert result.similarity == 1.0
            assert result.pixel_difference == 0
            assert result.passed is True
            assert result.regions == []

    def test_changed_square(self, white_png, changed_png):
        """A 20x20 square on a 64x64 canvas differs in exactly 400 pixels."""
        engine = VisualDiffEngine()

        result = engine.compare(white_png, changed_png)

        assert result.pixel_difference == 400
        assert result.similarity == pytest.approx(1 - 400 / 4096)
        assert result.passed is False
        assert result.width == 64
        assert result.height == 64
        assert len(result.regions) == 1
        region = result.regions[0]
        assert (region.x, region.y, region.width, region.height) == (10, 10, 20, 20)
        assert region.pixel_count == 400

    def test_passes_when_threshold_is_low(self, white_png, changed_png):
        engine = VisualDiffEngine()

        result = engine.compare(white_png, changed_png, DiffOptions(threshold=0.9))

        assert result.passed is True

    def test_diff_image_is_png_with_diff_color(self, white_png, changed_png):
        engine = VisualDiffEngine()

        result = engine.compare(white_png, changed_png, DiffOptions(diff_color=(0, 255, 0)))

        image = Image.open(io.BytesIO(result.diff_image)).convert("RGB")
        assert image.size == (64, 64)
        assert image.getpixel((15, 15)) == (0, 255, 0)
        assert image.getpixel((50, 50)) != (0, 255, 0)

    def test_small_color_shift_is_tolerated(self, png_factory):
        """Differences below the alpha tolerance do not count."""
        engine = VisualDiffEngine()
        baseline = png_factory(32, 32, color=(200, 200, 200))
        current = png_factory(32, 32, color=(202, 202, 202))

        result = engine.compare(baseline, current)

        assert result.pixel_difference == 0
        assert result.similarity == 1.0

    def test_dimension_mismatch(self, png_factory):
        engine = VisualDiffEngine()

        with pytest.raises(DimensionMismatch) as exc_info:
            engine.compare(png_factory(32, 32), png_factory(32, 16))

        assert exc_info.value.baseline == (32, 32)
        assert exc_info.value.current == (32, 16)

    def test_image_too_large(self, white_png):
        engine = VisualDiffEngine(max_image_size=10)

        with pytest.raises(ImageTooLarge):
            engine.compare(white_png, white_png)

    def test_undecodable_input(self, white_png):
        engine = VisualDiffEngine()

        with pytest.raises(ImageDecodeError):
            engine.compare(b"not an image", white_png)

    def test_early_exit_on_unrelated_large_images(self, png_factory):
        """Large images whose sample differs heavily skip the full comparison."""
        engine = VisualDiffEngine(large_image_pixels=100, rng=np.random.default_rng(7))
        baseline = png_factory(40, 40, color=(255, 255, 255))
        current = png_factory(40, 40, color=(0, 0, 0))

        result = engine.compare(baseline, current)

        assert result.early_exit is True
        assert result.similarity == 0.0
        assert result.pixel_difference == 1600
        assert result.passed is False
        assert result.diff_image is None

    def test_no_early_exit_for_similar_large_images(self, white_png, changed_png):
        engine = VisualDiffEngine(large_image_pixels=100, rng=np.random.default_rng(7))

        result = engine.compare(white_png, changed_png)

        assert result.early_exit is False
        assert result.pixel_difference == 400


class TestAntiAliasing:
    """Tests for anti-aliased pixel handling."""

    @staticmethod
    def _edge_images() -> tuple[bytes, bytes]:
        # A hard black/white edge, then a gray column between them in the current image
        base = np.full((20, 20, 3), 255, dtype=np.uint8)
        base[:, :10] = 0
        current = base.copy()
        current[:, 10] = 128

        def encode(array):
            buffer = io.BytesIO()
            Image.fromarray(array).save(buffer, format="PNG")
            return buffer.getvalue()

        return encode(base), encode(current)

    def test_antialiased_edge_is_ignored_by_default(self):
        baseline, current = self._edge_images()
        engine = VisualDiffEngine()

        result = engine.compare(baseline, current)

        assert result.pixel_difference == 0

    def test_antialiased_edge_counts_when_included(self):
        baseline, current = self._edge_images()
        engine = VisualDiffEngine()

        result = engine.compare(baseline, current, DiffOptions(include_anti_aliasing=True))

        assert result.pixel_difference == 20


class TestAnalyzeRegions:
    """Tests for connected region extraction."""

    def test_two_disjoint_blobs(self):
        mask = np.zeros((100, 100), dtype=bool)
        mask[5:20, 5:25] = True  # 15 x 20 = 300 px
        mask[50:70, 60:80] = True  # 20 x 20 = 400 px

        regions = analyze_regions(mask, 100, 100, min_region_size=100)

        boxes = sorted((r.x, r.y, r.width, r.height) for r in regions)
        assert boxes == [(5, 5, 20, 15), (60, 50, 20, 20)]

    def test_small_blob_is_filtered(self):
        mask = np.zeros((100, 100), dtype=bool)
        mask[5:20, 5:25] = True
        mask[90:95, 90:95] = True  # 25 px, below the minimum

        regions = analyze_regions(mask, 100, 100, min_region_size=100)

        assert len(regions) == 1
        assert regions[0].pixel_count == 300

    def test_diagonal_pixels_are_separate_components(self):
        mask = np.zeros((4, 4), dtype=bool)
        mask[0, 0] = True
        mask[1, 1] = True

        regions = analyze_regions(mask, 4, 4, min_region_size=1)

        assert len(regions) == 2

    def test_significance_is_fraction_of_image(self):
        mask = np.zeros((10, 10), dtype=bool)
        mask[:5, :] = True

        regions = analyze_regions(mask, 10, 10, min_region_size=1)

        assert regions[0].significance == pytest.approx(0.5)

    def test_large_region_does_not_recurse(self):
        """A full 500x500 mask is one region without hitting recursion limits."""
        mask = np.ones((500, 500), dtype=bool)

        regions = analyze_regions(mask, 500, 500)

        assert len(regions) == 1
        assert regions[0].pixel_count == 250_000

    def test_mask_shape_mismatch(self):
        with pytest.raises(ValueError):
            analyze_regions(np.zeros((5, 5), dtype=bool), 10, 10)


class TestClassification:
    """Tests for deterministic change type and severity."""

    def test_layout(self):
        analysis = DiffAnalysis(
            similarity=0.85,
            pixel_difference=400_000,
            regions=(Region(0, 0, 800, 600, significance=0.6),),
        )
        assert classify_change(analysis) == ChangeType.LAYOUT

    def test_content(self):
        analysis = DiffAnalysis(
            similarity=0.93,
            pixel_difference=20_000,
            regions=(Region(10, 10, 300, 200, significance=0.45),),
        )
        assert classify_change(analysis) == ChangeType.CONTENT

    def test_styling(self):
        analysis = DiffAnalysis(
            similarity=0.97,
            pixel_difference=2_000,
            regions=(
                Region(0, 0, 50, 50, significance=0.01),
                Region(100, 100, 40, 40, significance=0.01),
            ),
        )
        assert classify_change(analysis) == ChangeType.STYLING

    def test_animation(self):
        analysis = DiffAnalysis(
            similarity=0.99,
            pixel_difference=500,
            regions=(Region(0, 0, 300, 300, significance=0.01),),
        )
        assert classify_change(analysis) == ChangeType.ANIMATION

    def test_unknown_without_regions(self):
        analysis = DiffAnalysis(similarity=0.99, pixel_difference=5)
        assert classify_change(analysis) == ChangeType.UNKNOWN

    @pytest.mark.parametrize(
        "similarity,pixels,kind,expected",
        [
            (0.7, 0, None, Severity.CRITICAL),
            (0.85, 400_000, ChangeType.LAYOUT, Severity.CRITICAL),
            (0.85, 0, None, Severity.HIGH),
            (0.93, 60_000, ChangeType.CONTENT, Severity.HIGH),
            (0.92, 0, None, Severity.MEDIUM),
            (0.97, 20_000, ChangeType.STYLING, Severity.MEDIUM),
            (0.97, 20_000, None, Severity.LOW),
            (0.99, 10, ChangeType.ANIMATION, Severity.LOW),
        ],
    )
    def test_severity(self, similarity, pixels, kind, expected):
        analysis = DiffAnalysis(similarity=similarity, pixel_difference=pixels, classification=kind)
        assert get_severity(analysis) == expected

    def test_assess_combines_type_and_severity(self, white_png, changed_png):
        engine = VisualDiffEngine()
        result = engine.compare(white_png, changed_png)

        change_type, severity = engine.assess(result)

        assert change_type == ChangeType.UNKNOWN
        assert severity == Severity.MEDIUM


class TestSSIM:
    """Tests for structural similarity."""

    def test_identical_images_score_one(self, white_png):
        engine = VisualDiffEngine()

        result = engine.ssim_compare(white_png, white_png)

        assert result.ssim == pytest.approx(1.0)
        assert (result.width, result.height) == (64, 64)

    def test_different_images_score_lower(self, white_png, changed_png):
        engine = VisualDiffEngine()

        result = engine.ssim_compare(white_png, changed_png)

        assert result.ssim < 1.0

    def test_tiny_images(self, png_factory):
        engine = VisualDiffEngine()
        image = png_factory(2, 2)

        assert engine.ssim_compare(image, image).ssim == 1.0


class TestMemo:
    """Tests for comparison memoization."""

    def test_repeated_compare_hits_cache(self, white_png, changed_png):
        engine = VisualDiffEngine()

        first = engine.compare(white_png, changed_png)
        second = engine.compare(white_png, changed_png)

        stats = engine.get_cache_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert second.pixel_difference == first.pixel_difference

    def test_options_are_part_of_key(self, white_png, changed_png):
        engine = VisualDiffEngine()

        engine.compare(white_png, changed_png, DiffOptions(threshold=0.95))
        engine.compare(white_png, changed_png, DiffOptions(threshold=0.5))

        assert engine.get_cache_stats()["size"] == 2

    def test_lru_capacity(self, png_factory):
        engine = VisualDiffEngine(max_cache_entries=2)
        images = [png_factory(8, 8, color=(i * 40, 0, 0)) for i in range(4)]

        for image in images[1:]:
            engine.compare(images[0], image)

        assert engine.get_cache_stats()["size"] == 2

    def test_memory_threshold_clears_cache(self, white_png, changed_png):
        engine = VisualDiffEngine(memory_threshold=1)

        engine.compare(white_png, changed_png)

        stats = engine.get_cache_stats()
        assert stats["size"] == 0
        assert stats["bytes"] == 0

    def test_disabled_cache(self, white_png, changed_png):
        engine = VisualDiffEngine()
        engine.set_cache_enabled(False)

        engine.compare(white_png, changed_png)
        engine.compare(white_png, changed_png)

        stats = engine.get_cache_stats()
        assert stats["size"] == 0
        assert stats["hits"] == 0

    def test_from_settings(self, test_settings):
        engine = VisualDiffEngine.from_settings(test_settings)

        assert engine.max_image_size == test_settings.max_image_size
        assert engine.min_region_size == test_settings.min_region_size

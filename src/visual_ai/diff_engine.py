"""Pixel and structural comparison of screenshots.

The pixel comparison follows the YIQ perceptual color distance used by
pixelmatch: every pixel whose weighted YIQ delta exceeds a tolerance derived
from ``alpha`` is a candidate difference, and candidates that look like
anti-aliased edges in either image are reported separately so that font
smoothing and subpixel rendering do not fail a comparison.

Large images get a randomized sampling pre-pass first; if the sample already
shows the images are unrelated the engine returns an estimate instead of
paying for the full comparison.
"""

import hashlib
import io
from collections import OrderedDict
from dataclasses import replace
from typing import Optional

import numpy as np
import structlog
from PIL import Image, UnidentifiedImageError
from skimage.metrics import structural_similarity

from src.visual_ai.errors import DimensionMismatch, ImageDecodeError, ImageTooLarge
from src.visual_ai.models import (
    ChangeType,
    DiffAnalysis,
    DiffOptions,
    DiffResult,
    Region,
    Severity,
    SSIMResult,
)

logger = structlog.get_logger()

# 35215 is the maximum possible YIQ delta between two colors
MAX_YIQ_DELTA = 35215.0
SAMPLE_FRACTION = 0.1
SAMPLE_CHANNEL_TOLERANCE = 10
DIFF_BASE_OPACITY = 0.1
AA_COLOR = (255, 255, 0)

_NEIGHBOR_OFFSETS = np.array(
    [(-1, -1), (-1, 0), (-1, 1), (0, -1), (0, 1), (1, -1), (1, 0), (1, 1)],
    dtype=np.int64,
)


def _bytes_to_rgba(image_bytes: bytes) -> np.ndarray:
    """Decode encoded image bytes to an (H, W, 4) uint8 array."""
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
        raise ImageDecodeError(f"Could not decode image: {e}") from e
    return np.asarray(image.convert("RGBA"), dtype=np.uint8)


def _array_to_png(array: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(array).save(buffer, format="PNG")
    return buffer.getvalue()


def _blend_white(rgba: np.ndarray) -> np.ndarray:
    """Composite RGBA onto white and return float RGB."""
    rgb = rgba[..., :3].astype(np.float64)
    alpha = rgba[..., 3:4].astype(np.float64) / 255.0
    return 255.0 + (rgb - 255.0) * alpha


def _rgb_to_y(rgb: np.ndarray) -> np.ndarray:
    return rgb[..., 0] * 0.29889531 + rgb[..., 1] * 0.58662247 + rgb[..., 2] * 0.11448223


def _yiq_delta(rgb1: np.ndarray, rgb2: np.ndarray) -> np.ndarray:
    """Squared YIQ distance between two blended RGB arrays."""
    r1, g1, b1 = rgb1[..., 0], rgb1[..., 1], rgb1[..., 2]
    r2, g2, b2 = rgb2[..., 0], rgb2[..., 1], rgb2[..., 2]
    y = _rgb_to_y(rgb1) - _rgb_to_y(rgb2)
    i = (r1 * 0.59597799 - g1 * 0.27417610 - b1 * 0.32180189) - (
        r2 * 0.59597799 - g2 * 0.27417610 - b2 * 0.32180189
    )
    q = (r1 * 0.21147017 - g1 * 0.52261711 + b1 * 0.31114694) - (
        r2 * 0.21147017 - g2 * 0.52261711 + b2 * 0.31114694
    )
    return 0.5053 * y * y + 0.299 * i * i + 0.1957 * q * q


def _sibling_counts(rgba: np.ndarray, ys: np.ndarray, xs: np.ndarray) -> np.ndarray:
    """Count neighbors identical to each pixel; edge pixels get one extra."""
    height, width = rgba.shape[:2]
    on_edge = (xs == 0) | (xs == width - 1) | (ys == 0) | (ys == height - 1)
    counts = on_edge.astype(np.int64)
    center = rgba[ys, xs]
    for dy, dx in _NEIGHBOR_OFFSETS:
        ny, nx = ys + dy, xs + dx
        valid = (ny >= 0) & (ny < height) & (nx >= 0) & (nx < width)
        same = np.zeros(len(ys), dtype=bool)
        idx = np.flatnonzero(valid)
        same[idx] = np.all(rgba[ny[idx], nx[idx]] == center[idx], axis=1)
        counts += same
    return counts


def _antialiased(
    rgba: np.ndarray,
    luma: np.ndarray,
    other: np.ndarray,
    ys: np.ndarray,
    xs: np.ndarray,
) -> np.ndarray:
    """Vectorized anti-aliasing test for the candidate pixels (ys, xs).

    A pixel is anti-aliased when it has both a darker and a brighter
    neighbor, at most two neighbors of equal brightness, and its darkest or
    brightest neighbor sits in a flat area in both images.
    """
    height, width = luma.shape
    n = len(ys)
    on_edge = (xs == 0) | (xs == width - 1) | (ys == 0) | (ys == height - 1)
    zeroes = on_edge.astype(np.int64)

    ny = ys[:, None] + _NEIGHBOR_OFFSETS[None, :, 0]
    nx = xs[:, None] + _NEIGHBOR_OFFSETS[None, :, 1]
    valid = (ny >= 0) & (ny < height) & (nx >= 0) & (nx < width)
    ny_c = np.clip(ny, 0, height - 1)
    nx_c = np.clip(nx, 0, width - 1)

    delta = luma[ys, xs][:, None] - luma[ny_c, nx_c]
    zeroes += np.sum(valid & (delta == 0), axis=1)

    masked_min = np.where(valid, delta, np.inf)
    masked_max = np.where(valid, delta, -np.inf)
    min_idx = np.argmin(masked_min, axis=1)
    max_idx = np.argmax(masked_max, axis=1)
    rows = np.arange(n)
    min_val = masked_min[rows, min_idx]
    max_val = masked_max[rows, max_idx]

    candidate = (zeroes <= 2) & (min_val < 0) & (max_val > 0)
    result = np.zeros(n, dtype=bool)
    if not candidate.any():
        return result

    sel = np.flatnonzero(candidate)
    min_y, min_x = ny_c[sel, min_idx[sel]], nx_c[sel, min_idx[sel]]
    max_y, max_x = ny_c[sel, max_idx[sel]], nx_c[sel, max_idx[sel]]
    flat_min = (_sibling_counts(rgba, min_y, min_x) > 2) & (_sibling_counts(other, min_y, min_x) > 2)
    flat_max = (_sibling_counts(rgba, max_y, max_x) > 2) & (_sibling_counts(other, max_y, max_x) > 2)
    result[sel] = flat_min | flat_max
    return result


def analyze_regions(
    diff_mask: np.ndarray,
    width: int,
    height: int,
    min_region_size: int = 100,
) -> list[Region]:
    """Extract 4-connected regions of differing pixels.

    Uses an explicit stack and a flat visited arena so large masks cannot
    exhaust the recursion limit. Components smaller than ``min_region_size``
    pixels are dropped as noise.
    """
    flat = np.asarray(diff_mask, dtype=bool).reshape(-1)
    if flat.size != width * height:
        raise ValueError(f"Mask has {flat.size} pixels, expected {width * height}")

    total = width * height
    cells = flat.tobytes()
    visited = bytearray(total)
    regions: list[Region] = []

    for seed in np.flatnonzero(flat).tolist():
        if visited[seed]:
            continue
        visited[seed] = 1
        stack = [seed]
        size = 0
        min_x = min_y = None
        max_x = max_y = -1

        while stack:
            index = stack.pop()
            size += 1
            y, x = divmod(index, width)
            if min_x is None or x < min_x:
                min_x = x
            if min_y is None or y < min_y:
                min_y = y
            if x > max_x:
                max_x = x
            if y > max_y:
                max_y = y

            if x > 0:
                n = index - 1
                if cells[n] and not visited[n]:
                    visited[n] = 1
                    stack.append(n)
            if x < width - 1:
                n = index + 1
                if cells[n] and not visited[n]:
                    visited[n] = 1
                    stack.append(n)
            if y > 0:
                n = index - width
                if cells[n] and not visited[n]:
                    visited[n] = 1
                    stack.append(n)
            if y < height - 1:
                n = index + width
                if cells[n] and not visited[n]:
                    visited[n] = 1
                    stack.append(n)

        if size >= min_region_size:
            regions.append(Region(
                x=min_x,
                y=min_y,
                width=max_x - min_x + 1,
                height=max_y - min_y + 1,
                significance=min(size / total, 1.0),
                pixel_count=size,
            ))

    return regions


def classify_change(analysis: DiffAnalysis) -> ChangeType:
    """Bucket a difference into a change type from its regions and similarity."""
    similarity = analysis.similarity
    regions = analysis.regions

    has_large = any(
        (r.width > 500 or r.height > 500) and r.significance > 0.5 for r in regions
    )
    if similarity < 0.9 and has_large:
        return ChangeType.LAYOUT

    has_content = any(
        100 < r.width < 800 and 50 < r.height < 600 and r.significance > 0.4
        for r in regions
    )
    if similarity < 0.95 and has_content:
        return ChangeType.CONTENT

    has_small = len(regions) > 1 and all(r.width < 200 and r.height < 200 for r in regions)
    if similarity < 0.98 and has_small:
        return ChangeType.STYLING

    if similarity > 0.95 and regions:
        return ChangeType.ANIMATION

    return ChangeType.UNKNOWN


def get_severity(analysis: DiffAnalysis) -> Severity:
    """Deterministic severity from similarity, pixel count and change type."""
    similarity = analysis.similarity
    pixels = analysis.pixel_difference
    kind = analysis.classification

    if similarity < 0.8 or (kind == ChangeType.LAYOUT and pixels > 300_000):
        return Severity.CRITICAL
    if similarity < 0.9 or (kind == ChangeType.CONTENT and pixels > 50_000):
        return Severity.HIGH
    if similarity < 0.95 or (kind == ChangeType.STYLING and pixels > 10_000):
        return Severity.MEDIUM
    return Severity.LOW


class VisualDiffEngine:
    """Compares baseline and current screenshots.

    Results are memoized by content hash and options in a bounded LRU. The
    memo is dropped entirely once the diff images it holds exceed
    ``memory_threshold`` bytes.
    """

    def __init__(
        self,
        max_image_size: int = 10 * 1024 * 1024,
        max_cache_entries: int = 100,
        memory_threshold: int = 100 * 1024 * 1024,
        large_image_pixels: int = 1920 * 1080,
        early_exit_similarity: float = 0.7,
        min_region_size: int = 100,
        rng: Optional[np.random.Generator] = None,
    ):
        self.max_image_size = max_image_size
        self.max_cache_entries = max_cache_entries
        self.memory_threshold = memory_threshold
        self.large_image_pixels = large_image_pixels
        self.early_exit_similarity = early_exit_similarity
        self.min_region_size = min_region_size
        self.rng = rng or np.random.default_rng()

        self._cache: OrderedDict[str, DiffResult] = OrderedDict()
        self._cache_bytes = 0
        self._cache_enabled = True
        self._cache_hits = 0
        self._cache_misses = 0
        self.log = logger.bind(component="diff_engine")

    @classmethod
    def from_settings(cls, settings, rng: Optional[np.random.Generator] = None) -> "VisualDiffEngine":
        return cls(
            max_image_size=settings.max_image_size,
            max_cache_entries=settings.max_diff_cache_entries,
            memory_threshold=settings.diff_memory_threshold,
            large_image_pixels=settings.large_image_pixels,
            early_exit_similarity=settings.early_exit_similarity,
            min_region_size=settings.min_region_size,
            rng=rng,
        )

    def compare(
        self,
        baseline: bytes,
        current: bytes,
        options: Optional[DiffOptions] = None,
    ) -> DiffResult:
        """Compare two encoded images.

        Raises:
            ImageTooLarge: Either input exceeds ``max_image_size`` bytes
            DimensionMismatch: Decoded sizes differ
            ImageDecodeError: Either input is not an image
        """
        options = options or DiffOptions()
        for data in (baseline, current):
            if len(data) > self.max_image_size:
                raise ImageTooLarge(len(data), self.max_image_size)

        key = self._cache_key(baseline, current, options)
        if self._cache_enabled:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                self._cache_hits += 1
                return replace(cached, regions=list(cached.regions))
            self._cache_misses += 1

        img1 = _bytes_to_rgba(baseline)
        img2 = _bytes_to_rgba(current)
        if img1.shape != img2.shape:
            raise DimensionMismatch(
                (img1.shape[1], img1.shape[0]),
                (img2.shape[1], img2.shape[0]),
            )

        height, width = img1.shape[:2]
        total = width * height

        if total > self.large_image_pixels:
            sampled = self._sample_similarity(img1, img2)
            if sampled < self.early_exit_similarity:
                self.log.info(
                    "Early exit on sampled similarity",
                    sampled_similarity=round(sampled, 4),
                    width=width,
                    height=height,
                )
                result = DiffResult(
                    similarity=sampled,
                    pixel_difference=int((1 - sampled) * total),
                    passed=sampled >= options.threshold,
                    threshold=options.threshold,
                    width=width,
                    height=height,
                    early_exit=True,
                )
                self._remember(key, result)
                return result

        diff_mask, aa_mask = self._pixel_masks(img1, img2, options)
        differing = int(diff_mask.sum())
        similarity = (total - differing) / total if total else 1.0

        result = DiffResult(
            similarity=similarity,
            pixel_difference=differing,
            passed=similarity >= options.threshold,
            threshold=options.threshold,
            width=width,
            height=height,
            regions=analyze_regions(diff_mask, width, height, self.min_region_size),
            diff_image=self._render_diff(img1, diff_mask, aa_mask, options.diff_color),
        )
        self.log.debug(
            "Comparison complete",
            similarity=round(similarity, 4),
            pixel_difference=differing,
            regions=len(result.regions),
            passed=result.passed,
        )
        self._remember(key, result)
        return result

    def ssim_compare(self, baseline: bytes, current: bytes) -> SSIMResult:
        """Grayscale structural similarity of two same-sized images."""
        img1 = _bytes_to_rgba(baseline)
        img2 = _bytes_to_rgba(current)
        if img1.shape != img2.shape:
            raise DimensionMismatch(
                (img1.shape[1], img1.shape[0]),
                (img2.shape[1], img2.shape[0]),
            )
        height, width = img1.shape[:2]
        gray1 = _rgb_to_y(_blend_white(img1))
        gray2 = _rgb_to_y(_blend_white(img2))

        win_size = min(7, height, width)
        if win_size % 2 == 0:
            win_size -= 1
        if win_size < 3:
            score = 1.0 if np.array_equal(img1, img2) else float(
                1.0 - np.mean(np.abs(gray1 - gray2)) / 255.0
            )
        else:
            score = float(structural_similarity(gray1, gray2, win_size=win_size, data_range=255.0))
        return SSIMResult(ssim=score, width=width, height=height)

    def analyze_regions(self, diff_mask: np.ndarray, width: int, height: int) -> list[Region]:
        return analyze_regions(diff_mask, width, height, self.min_region_size)

    def classify_change(self, analysis: DiffAnalysis) -> ChangeType:
        return classify_change(analysis)

    def get_severity(self, analysis: DiffAnalysis) -> Severity:
        return get_severity(analysis)

    def assess(self, result: DiffResult) -> tuple[ChangeType, Severity]:
        """Deterministic change type and severity for a comparison result."""
        analysis = DiffAnalysis.from_result(result)
        change_type = classify_change(analysis)
        severity = get_severity(replace(analysis, classification=change_type))
        return change_type, severity

    def clear_cache(self) -> None:
        self._cache.clear()
        self._cache_bytes = 0

    def set_cache_enabled(self, enabled: bool) -> None:
        self._cache_enabled = enabled
        if not enabled:
            self.clear_cache()

    def set_memory_limits(
        self,
        max_cache_entries: Optional[int] = None,
        memory_threshold: Optional[int] = None,
    ) -> None:
        if max_cache_entries is not None:
            self.max_cache_entries = max_cache_entries
        if memory_threshold is not None:
            self.memory_threshold = memory_threshold
        while len(self._cache) > self.max_cache_entries:
            self._evict_oldest()

    def get_cache_stats(self) -> dict:
        return {
            "size": len(self._cache),
            "max_size": self.max_cache_entries,
            "bytes": self._cache_bytes,
            "hits": self._cache_hits,
            "misses": self._cache_misses,
            "enabled": self._cache_enabled,
        }

    def _sample_similarity(self, img1: np.ndarray, img2: np.ndarray) -> float:
        flat1 = img1.reshape(-1, 4)
        flat2 = img2.reshape(-1, 4)
        sample_size = max(1, int(len(flat1) * SAMPLE_FRACTION))
        indices = self.rng.integers(0, len(flat1), size=sample_size)
        delta = np.abs(flat1[indices, :3].astype(np.int16) - flat2[indices, :3].astype(np.int16))
        differing = int(np.count_nonzero(np.any(delta > SAMPLE_CHANNEL_TOLERANCE, axis=1)))
        return (sample_size - differing) / sample_size

    def _pixel_masks(
        self,
        img1: np.ndarray,
        img2: np.ndarray,
        options: DiffOptions,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return (difference mask, anti-aliased mask)."""
        height, width = img1.shape[:2]
        diff_mask = np.zeros((height, width), dtype=bool)
        aa_mask = np.zeros((height, width), dtype=bool)

        changed = np.any(img1 != img2, axis=2)
        if not changed.any():
            return diff_mask, aa_mask

        blended1 = _blend_white(img1)
        blended2 = _blend_white(img2)
        max_delta = MAX_YIQ_DELTA * options.alpha * options.alpha
        over = changed & (_yiq_delta(blended1, blended2) > max_delta)
        if not over.any():
            return diff_mask, aa_mask

        ys, xs = np.nonzero(over)
        if options.include_anti_aliasing:
            diff_mask[ys, xs] = True
            return diff_mask, aa_mask

        luma1 = _rgb_to_y(blended1)
        luma2 = _rgb_to_y(blended2)
        is_aa = _antialiased(img1, luma1, img2, ys, xs) | _antialiased(img2, luma2, img1, ys, xs)
        aa_mask[ys[is_aa], xs[is_aa]] = True
        diff_mask[ys[~is_aa], xs[~is_aa]] = True
        return diff_mask, aa_mask

    @staticmethod
    def _render_diff(
        baseline: np.ndarray,
        diff_mask: np.ndarray,
        aa_mask: np.ndarray,
        diff_color: tuple[int, int, int],
    ) -> bytes:
        """Faded grayscale baseline with differences and AA pixels painted."""
        luma = _rgb_to_y(baseline[..., :3].astype(np.float64))
        opacity = DIFF_BASE_OPACITY * baseline[..., 3].astype(np.float64) / 255.0
        gray = np.clip(255.0 + (luma - 255.0) * opacity, 0, 255).astype(np.uint8)

        output = np.empty(baseline.shape, dtype=np.uint8)
        output[..., 0] = gray
        output[..., 1] = gray
        output[..., 2] = gray
        output[..., 3] = 255
        output[aa_mask, :3] = AA_COLOR
        output[diff_mask, :3] = diff_color
        return _array_to_png(output)

    @staticmethod
    def _cache_key(baseline: bytes, current: bytes, options: DiffOptions) -> str:
        return ":".join((
            hashlib.sha256(baseline).hexdigest(),
            hashlib.sha256(current).hexdigest(),
            hashlib.sha256(options.cache_token().encode("utf-8")).hexdigest()[:16],
        ))

    def _remember(self, key: str, result: DiffResult) -> None:
        if not self._cache_enabled:
            return
        if key in self._cache:
            self._cache.move_to_end(key)
            return
        while len(self._cache) >= self.max_cache_entries and self._cache:
            self._evict_oldest()
        self._cache[key] = replace(result, regions=list(result.regions))
        self._cache_bytes += len(result.diff_image or b"")
        if self._cache_bytes > self.memory_threshold:
            self.log.warning(
                "Diff cache over memory threshold, clearing",
                cached_bytes=self._cache_bytes,
                threshold=self.memory_threshold,
            )
            self.clear_cache()

    def _evict_oldest(self) -> None:
        _, evicted = self._cache.popitem(last=False)
        self._cache_bytes -= len(evicted.diff_image or b"")

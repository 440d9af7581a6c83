"""Image preprocessing for vision model requests.

Normalizes screenshots into a bounded-size, re-encoded form before they are
fingerprinted for the result cache and sent to a vision provider. Smaller
payloads keep provider latency and token cost predictable.
"""

import asyncio
import base64
import binascii
import hashlib
import io
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Union

import structlog
from PIL import Image, UnidentifiedImageError

from src.visual_ai.errors import ImageDecodeError, ImageTooLarge

logger = structlog.get_logger()

ImageInput = Union[bytes, bytearray, str, Path]

_DATA_URL = re.compile(r"^data:(?P<media>[\w/+.-]+)?(?:;[\w=-]+)*;base64,(?P<data>.*)$", re.DOTALL)
_MEDIA_TYPES = {"jpeg": "image/jpeg", "png": "image/png", "webp": "image/webp"}


@dataclass(frozen=True)
class PreprocessorConfig:
    """Target bounds and encoding for preprocessed images."""

    max_width: int = 2048
    max_height: int = 2048
    quality: int = 85
    maintain_aspect_ratio: bool = True
    format: str = "jpeg"
    max_input_bytes: int = 10 * 1024 * 1024
    max_pixels: int = 50_000_000

    @classmethod
    def from_settings(cls, settings) -> "PreprocessorConfig":
        fmt = getattr(settings.preprocess_format, "value", settings.preprocess_format)
        return cls(
            max_width=settings.preprocess_max_width,
            max_height=settings.preprocess_max_height,
            quality=settings.preprocess_quality,
            format=fmt,
            max_input_bytes=settings.max_image_size,
        )


@dataclass
class PreprocessedImage:
    """A normalized image ready for hashing and transmission."""

    buffer: bytes
    base64: str
    fingerprint: str
    media_type: str
    dimensions: tuple[int, int]
    original_size: int
    processed_size: int
    reduction_percent: int
    original_dimensions: tuple[int, int] = field(default=(0, 0))

    @property
    def width(self) -> int:
        return self.dimensions[0]

    @property
    def height(self) -> int:
        return self.dimensions[1]


def fingerprint_image(image: Image.Image) -> str:
    """SHA-256 over decoded pixel content, independent of the input encoding."""
    digest = hashlib.sha256()
    digest.update(f"{image.mode}:{image.width}x{image.height}:".encode("utf-8"))
    digest.update(image.tobytes())
    return digest.hexdigest()


def target_dimensions(
    width: int,
    height: int,
    max_width: int,
    max_height: int,
    maintain_aspect_ratio: bool = True,
) -> tuple[int, int]:
    """Compute output dimensions, never enlarging either axis."""
    if width <= max_width and height <= max_height:
        return width, height
    if not maintain_aspect_ratio:
        return min(width, max_width), min(height, max_height)
    scale = min(max_width / width, max_height / height)
    return max(1, round(width * scale)), max(1, round(height * scale))


class ImagePreprocessor:
    """Normalizes images for vision providers.

    Accepts raw bytes, base64 strings, data URLs and file paths. Every input
    is decoded, clamped to the configured bounds and re-encoded; the
    fingerprint is taken over the decoded pixels so that the same image in
    different transport encodings maps to the same cache key.
    """

    def __init__(self, config: PreprocessorConfig | None = None):
        self.config = config or PreprocessorConfig()
        if self.config.format not in _MEDIA_TYPES:
            raise ValueError(f"Unsupported output format: {self.config.format}")
        self.log = logger.bind(component="image_preprocessor")

    def get_config(self) -> PreprocessorConfig:
        return self.config

    def update_config(self, **changes) -> PreprocessorConfig:
        """Replace selected configuration fields."""
        config = replace(self.config, **changes)
        if config.format not in _MEDIA_TYPES:
            raise ValueError(f"Unsupported output format: {config.format}")
        self.config = config
        return self.config

    async def preprocess(self, data: ImageInput) -> PreprocessedImage:
        """Preprocess a single image off the event loop."""
        return await asyncio.to_thread(self.preprocess_sync, data)

    async def preprocess_batch(self, inputs: list[ImageInput]) -> list[PreprocessedImage]:
        """Preprocess images independently; output order matches input order."""
        return list(await asyncio.gather(*(self.preprocess(item) for item in inputs)))

    def preprocess_sync(self, data: ImageInput) -> PreprocessedImage:
        raw = self.load_bytes(data)
        if len(raw) > self.config.max_input_bytes:
            raise ImageTooLarge(len(raw), self.config.max_input_bytes)

        image = self._decode(raw)
        original_dimensions = image.size
        width, height = target_dimensions(
            image.width,
            image.height,
            self.config.max_width,
            self.config.max_height,
            self.config.maintain_aspect_ratio,
        )
        if (width, height) != image.size:
            image = image.resize((width, height), Image.Resampling.LANCZOS)

        image = self._normalize_mode(image)
        buffer = self._encode(image)
        processed_size = len(buffer)
        original_size = len(raw)
        reduction = round((original_size - processed_size) / original_size * 100) if original_size else 0

        result = PreprocessedImage(
            buffer=buffer,
            base64=base64.b64encode(buffer).decode("utf-8"),
            fingerprint=fingerprint_image(image),
            media_type=_MEDIA_TYPES[self.config.format],
            dimensions=(image.width, image.height),
            original_size=original_size,
            processed_size=processed_size,
            reduction_percent=reduction,
            original_dimensions=original_dimensions,
        )
        self.log.debug(
            "Image preprocessed",
            original=f"{original_dimensions[0]}x{original_dimensions[1]}",
            processed=f"{width}x{height}",
            reduction_percent=reduction,
        )
        return result

    def load_bytes(self, data: ImageInput) -> bytes:
        """Resolve any supported input form to encoded image bytes."""
        if isinstance(data, (bytes, bytearray)):
            return bytes(data)
        if isinstance(data, Path):
            return data.read_bytes()
        if not isinstance(data, str):
            raise ImageDecodeError(f"Unsupported image input type: {type(data).__name__}")

        match = _DATA_URL.match(data)
        if match:
            return self._b64decode(match.group("data"))
        # Short strings that exist on disk are paths; everything else is base64
        if len(data) < 4096 and Path(data).is_file():
            return Path(data).read_bytes()
        return self._b64decode(data)

    @staticmethod
    def _b64decode(text: str) -> bytes:
        try:
            return base64.b64decode("".join(text.split()), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ImageDecodeError(f"Invalid base64 image data: {e}") from e

    def _decode(self, raw: bytes) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(raw))
            if image.width * image.height > self.config.max_pixels:
                raise ImageTooLarge(image.width * image.height, self.config.max_pixels, unit="pixels")
            image.load()
        except Image.DecompressionBombError as e:
            raise ImageTooLarge(len(raw), self.config.max_input_bytes) from e
        except (UnidentifiedImageError, OSError) as e:
            raise ImageDecodeError(f"Could not decode image: {e}") from e
        return image

    def _normalize_mode(self, image: Image.Image) -> Image.Image:
        if self.config.format == "jpeg":
            if image.mode in ("RGBA", "LA", "P"):
                rgba = image.convert("RGBA")
                background = Image.new("RGB", rgba.size, (255, 255, 255))
                background.paste(rgba, mask=rgba.split()[-1])
                return background
            return image.convert("RGB") if image.mode != "RGB" else image
        if image.mode not in ("RGB", "RGBA"):
            return image.convert("RGBA")
        return image

    def _encode(self, image: Image.Image) -> bytes:
        buffer = io.BytesIO()
        if self.config.format == "jpeg":
            image.save(buffer, format="JPEG", quality=self.config.quality)
        elif self.config.format == "png":
            image.save(buffer, format="PNG", compress_level=9)
        else:
            image.save(buffer, format="WEBP", quality=self.config.quality)
        return buffer.getvalue()

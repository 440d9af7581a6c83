"""Shared fixtures for visual_ai tests.

Images are generated with Pillow so every test owns exact pixel content.
"""

import io

import pytest
from PIL import Image, ImageDraw


def make_png(width: int = 64, height: int = 64, color=(255, 255, 255), boxes=()) -> bytes:
    """Solid PNG with optional filled rectangles ``(x0, y0, x1, y1, color)``."""
    image = Image.new("RGB", (width, height), color)
    draw = ImageDraw.Draw(image)
    for x0, y0, x1, y1, fill in boxes:
        draw.rectangle([x0, y0, x1, y1], fill=fill)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def png_factory():
    return make_png


@pytest.fixture
def white_png():
    return make_png(64, 64)


@pytest.fixture
def changed_png():
    """White 64x64 with a 20x20 black square; 400 of 4096 pixels differ."""
    return make_png(64, 64, boxes=[(10, 10, 29, 29, (0, 0, 0))])

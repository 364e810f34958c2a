import io
import random

import pytest
from PIL import Image

from common.storage import SourceFile


def make_image(width, height, fmt="PNG", color=(200, 30, 60, 255), mode="RGBA"):
    """Encodes a solid-color image and returns its bytes."""
    img = Image.new(mode, (width, height), color if mode == "RGBA" else color[:3])
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def make_noise(width, height, fmt="PNG", seed=1234):
    """Random RGB noise, which compresses badly and makes quality matter."""
    rng = random.Random(seed)
    data = bytes(rng.getrandbits(8) for _ in range(width * height * 3))
    img = Image.frombytes("RGB", (width, height), data)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def make_gradient(width, height, fmt="PNG"):
    """Asymmetric content so flips and rotations are observable."""
    img = Image.new("RGBA", (width, height))
    img.putdata([
        ((x * 255) // max(width - 1, 1), (y * 255) // max(height - 1, 1), (x + y) % 256, 255)
        for y in range(height)
        for x in range(width)
    ])
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def open_image(data):
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


@pytest.fixture
def png_source():
    return SourceFile(content=make_gradient(40, 20), mime="image/png", name="photo.png")

import io
import logging
from typing import Optional

from PIL import Image, UnidentifiedImageError

from common.errors import DecodeError
from common.files import PIL_FORMATS

logger = logging.getLogger(__name__)

# Formats whose encoder exposes a quality knob
LOSSY_FORMATS = {"image/jpeg", "image/webp"}

# Formats that cannot carry alpha; transparent areas are painted white first
OPAQUE_FORMATS = {"image/jpeg"}

SAVE_FORMATS = {mime: name for name, mime in PIL_FORMATS.items()}

# Multi-picture JPEGs from cameras open as MPO
DECODE_FORMATS = {**PIL_FORMATS, "MPO": "image/jpeg"}


def supports_quality(mime: str) -> bool:
    return mime in LOSSY_FORMATS


def is_opaque(mime: str) -> bool:
    return mime in OPAQUE_FORMATS


def decode(data: bytes, mime: str) -> Image.Image:
    """Parses raw bytes into an RGBA pixel surface.

    Only the first frame of a multi-frame source is used. The caller owns the
    returned image and should close it once the pipeline is done.
    """
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise DecodeError(f"Cannot decode {mime} image: {e}") from e

    detected = DECODE_FORMATS.get(img.format)
    if detected is None:
        img.close()
        raise DecodeError(f"Unsupported source format: {img.format}")
    if detected != mime:
        logger.warning(f"Declared type {mime} does not match detected {detected}")

    if img.mode != "RGBA":
        converted = img.convert("RGBA")
        img.close()
        img = converted
    return img


def _quality_to_pil(quality: float) -> int:
    return max(1, min(100, int(round(quality * 100))))


def encode(img: Image.Image, mime: str, quality: float, lossless: bool = False) -> Optional[bytes]:
    """Serializes a surface. Returns None if the encoder fails.

    PNG ignores quality and is always written losslessly. ``lossless`` switches
    WebP to its lossless mode.
    """
    fmt = SAVE_FORMATS.get(mime)
    if fmt is None:
        logger.error(f"No encoder for {mime}")
        return None

    out = img
    if is_opaque(mime) and img.mode != "RGB":
        out = img.convert("RGB")

    options = {}
    if supports_quality(mime):
        options["quality"] = _quality_to_pil(quality)
    if lossless and mime == "image/webp":
        options["lossless"] = True

    buf = io.BytesIO()
    try:
        out.save(buf, format=fmt, **options)
    except (OSError, ValueError) as e:
        logger.error(f"Encoding to {mime} at quality {quality:.3f} failed: {e}")
        return None
    finally:
        if out is not img:
            out.close()
    return buf.getvalue()

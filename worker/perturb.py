from typing import Callable, Optional

from PIL import Image

# (region side in px, channels touched, delta) tried in order until the encoded
# bytes change. The first step is the plain one-pixel, one-channel nudge; the
# later ones only run when a lossy encoder quantizes the smaller edit away.
UNIQUENESS_STEPS = [
    (1, 1, 1),
    (1, 1, 2),
    (1, 1, 4),
    (1, 1, 8),
    (1, 1, 16),
    (1, 1, 32),
    (8, 3, 1),
    (8, 3, 2),
    (16, 3, 2),
    (16, 3, 4),
]


def perturb(img: Image.Image, delta: int = 1, size: int = 1, channels: int = 1) -> None:
    """Nudges the top-left ``size`` x ``size`` pixels by ``delta``, in place.

    Each of the first ``channels`` channels moves up, or down when that would
    overflow 255. The defaults touch only the first channel of pixel (0, 0).
    """
    width, height = img.size
    for y in range(min(size, height)):
        for x in range(min(size, width)):
            pixel = list(img.getpixel((x, y)))
            for c in range(min(channels, len(pixel))):
                pixel[c] = pixel[c] - delta if pixel[c] + delta > 255 else pixel[c] + delta
            img.putpixel((x, y), tuple(pixel))


def encode_unique(
    img: Image.Image, encode: Callable[[Image.Image], Optional[bytes]]
) -> Optional[bytes]:
    """Encodes a perturbed copy of ``img`` whose bytes differ from encoding
    ``img`` itself, using the smallest step of UNIQUENESS_STEPS that survives.

    Returns None if the encoder fails or no step changes the output.
    """
    baseline = encode(img)
    if baseline is None:
        return None
    for size, channels, delta in UNIQUENESS_STEPS:
        candidate = img.copy()
        try:
            perturb(candidate, delta=delta, size=size, channels=channels)
            data = encode(candidate)
        finally:
            candidate.close()
        if data is None:
            return None
        if data != baseline:
            return data
    return None

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from common.config import (
    SEARCH_FALLBACK_QUALITY,
    SEARCH_MAX_ITERATIONS,
    SEARCH_MAX_QUALITY,
    SEARCH_MIN_QUALITY,
    SEARCH_QUALITY_TOLERANCE,
)

logger = logging.getLogger(__name__)

EncodeFn = Callable[[float], Awaitable[Optional[bytes]]]


@dataclass(frozen=True)
class SearchOutcome:
    data: Optional[bytes]
    quality: float
    target_met: bool
    iterations: int


async def search_quality(encode: EncodeFn, target_bytes: int) -> SearchOutcome:
    """Bisects quality to find the highest one whose output fits ``target_bytes``.

    Dimensions are fixed here. If nothing fits, a fallback encode is returned
    with ``target_met=False`` instead of failing; ``data`` is None only when
    the encoder itself gives up.
    """
    min_q, max_q = SEARCH_MIN_QUALITY, SEARCH_MAX_QUALITY
    best: Optional[bytes] = None
    best_q = 0.0
    iteration = 0

    while iteration < SEARCH_MAX_ITERATIONS:
        q = (min_q + max_q) / 2
        blob = await encode(q)
        if blob is None:
            break
        logger.debug(f"quality={q:.4f} size={len(blob)} target={target_bytes}")
        if len(blob) <= target_bytes:
            best, best_q = blob, q
            min_q = q
        else:
            max_q = q
        if max_q - min_q < SEARCH_QUALITY_TOLERANCE:
            break
        iteration += 1

    if best is not None:
        return SearchOutcome(best, best_q, True, iteration)

    logger.warning(
        f"No quality fits {target_bytes} bytes, falling back to quality {SEARCH_FALLBACK_QUALITY}"
    )
    fallback = await encode(SEARCH_FALLBACK_QUALITY)
    met = fallback is not None and len(fallback) <= target_bytes
    return SearchOutcome(fallback, SEARCH_FALLBACK_QUALITY, met, iteration)

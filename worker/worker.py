import asyncio
import logging
from typing import Optional

from PIL import Image

from common.errors import EncodeError
from common.files import output_filename
from common.handles import DisplayHandle
from common.job_schema import CompressSettings, Job, Md5Settings, Result, TransformSettings
from worker.codec import decode, encode, is_opaque, supports_quality
from worker.geometry import compute_plan, render
from worker.perturb import encode_unique
from worker.search import search_quality

logger = logging.getLogger(__name__)


def _draw(job: Job, settings: TransformSettings) -> Image.Image:
    """Decode and lay out. Runs off the event loop."""
    src = decode(job.source_bytes, job.source_mime)
    try:
        plan = compute_plan(src.width, src.height, settings)
        img = render(src, plan, opaque=is_opaque(settings.format))
    finally:
        src.close()
    return img


def _encode_md5(img: Image.Image, mime: str) -> Optional[bytes]:
    data = encode_unique(img, lambda im: encode(im, mime, 1.0))
    if data is None and mime == "image/webp":
        # Lossy WebP can swallow even the largest step; lossless keeps it
        logger.info("Perturbation lost in lossy WebP, encoding losslessly")
        data = encode_unique(img, lambda im: encode(im, mime, 1.0, lossless=True))
    return data


async def process_job(job: Job, settings: TransformSettings) -> Result:
    """Runs one job through the pipeline and returns its Result.

    Raises DecodeError or EncodeError; the source bytes are never modified.
    """
    img = await asyncio.to_thread(_draw, job, settings)
    try:
        mime = settings.format
        target_met: Optional[bool] = None

        if isinstance(settings, Md5Settings):
            data = await asyncio.to_thread(_encode_md5, img, mime)
        elif isinstance(settings, CompressSettings) and supports_quality(mime):
            async def encode_at(q: float) -> Optional[bytes]:
                return await asyncio.to_thread(encode, img, mime, q)

            outcome = await search_quality(encode_at, settings.target_bytes)
            data, target_met = outcome.data, outcome.target_met
        else:
            # Lossless targets and the non-compress tools encode once at full quality
            data = await asyncio.to_thread(encode, img, mime, 1.0)
            if isinstance(settings, CompressSettings) and data is not None:
                target_met = len(data) <= settings.target_bytes

        if data is None:
            raise EncodeError(f"Encoder produced no output for {mime}")

        width, height = img.size
    finally:
        img.close()

    return Result(
        encoded_bytes=data,
        mime=mime,
        filename=output_filename(job.name, settings.tool, mime),
        width=width,
        height=height,
        original_size=job.original_size,
        compressed_size=len(data),
        target_met=target_met,
        handle=DisplayHandle(data, mime),
    )

"""Output geometry for each tool.

``compute_plan`` is pure: it only looks at the source size and the settings.
``render`` applies a plan to a decoded RGBA surface with Pillow.
"""
import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

from PIL import Image

from common.job_schema import (
    CompressSettings,
    ConvertSettings,
    CropSettings,
    Md5Settings,
    ResizeSettings,
    RotateSettings,
    TransformSettings,
)

logger = logging.getLogger(__name__)

WHITE = (255, 255, 255, 255)

# Clockwise rotation in degrees -> Pillow transpose (Pillow's ROTATE_* turn counter-clockwise)
ROTATIONS = {
    0: None,
    90: Image.Transpose.ROTATE_270,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_90,
}


@dataclass(frozen=True)
class DrawPlan:
    width: int
    height: int
    # (left, top, right, bottom) region of the source to keep, no scaling
    crop_box: Optional[Tuple[int, int, int, int]] = None
    rotate_angle: int = 0
    flip_horizontal: bool = False
    flip_vertical: bool = False

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height


def _dim(value: float) -> int:
    # Half rounds up (250.5 -> 251), not to even
    return max(1, math.floor(value + 0.5))


def _fit_within(width: int, height: int, limit: int) -> Tuple[int, int]:
    """Scales down so the larger side equals ``limit``; no-op if already within it."""
    if limit <= 0 or (width <= limit and height <= limit):
        return width, height
    ratio = width / height
    if ratio > 1:
        return limit, _dim(limit / ratio)
    return _dim(limit * ratio), limit


def _resize_dims(width: int, height: int, s: ResizeSettings) -> Tuple[int, int]:
    if s.resize_mode == "percentage":
        pct = s.resize_percentage / 100
        return _dim(width * pct), _dim(height * pct)

    ratio = width / height
    if s.maintain_aspect_ratio:
        if s.resize_width > 0:
            if s.resize_height > 0:
                logger.debug("Both width and height given with aspect ratio kept; width wins")
            return s.resize_width, _dim(s.resize_width / ratio)
        if s.resize_height > 0:
            return _dim(s.resize_height * ratio), s.resize_height
        return width, height
    return s.resize_width or width, s.resize_height or height


def _crop_box(width: int, height: int, s: CropSettings) -> Optional[Tuple[int, int, int, int]]:
    ratio = s.ratio
    if ratio is None:
        return None
    target = ratio[0] / ratio[1]
    source = width / height
    if source > target:
        crop_w = min(width, _dim(height * target))
        left = (width - crop_w) // 2
        return left, 0, left + crop_w, height
    crop_h = min(height, _dim(width / target))
    top = (height - crop_h) // 2
    return 0, top, width, top + crop_h


def compute_plan(width: int, height: int, settings: TransformSettings) -> DrawPlan:
    """Output size and draw operations for a ``width`` x ``height`` source."""
    if isinstance(settings, CompressSettings):
        return DrawPlan(*_fit_within(width, height, settings.max_width_or_height))

    elif isinstance(settings, ResizeSettings):
        return DrawPlan(*_resize_dims(width, height, settings))

    elif isinstance(settings, CropSettings):
        box = _crop_box(width, height, settings)
        if box is None:
            return DrawPlan(width, height)
        left, top, right, bottom = box
        return DrawPlan(right - left, bottom - top, crop_box=box)

    elif isinstance(settings, RotateSettings):
        swap = settings.rotate_angle in (90, 270)
        return DrawPlan(
            height if swap else width,
            width if swap else height,
            rotate_angle=settings.rotate_angle,
            flip_horizontal=settings.flip_horizontal,
            flip_vertical=settings.flip_vertical,
        )

    elif isinstance(settings, (ConvertSettings, Md5Settings)):
        return DrawPlan(width, height)

    else:
        raise TypeError(f"Unsupported settings type: {type(settings).__name__}")


def render(src: Image.Image, plan: DrawPlan, opaque: bool) -> Image.Image:
    """Draws ``src`` (RGBA) according to ``plan`` into a new surface.

    With ``opaque`` set the surface is filled white before compositing, so
    transparent regions do not turn black once alpha is dropped.
    """
    if plan.crop_box is not None:
        img = src.crop(plan.crop_box)
    elif plan.rotate_angle or plan.flip_horizontal or plan.flip_vertical:
        # Flips apply in source orientation, then the rotation
        img = src
        if plan.flip_horizontal:
            img = img.transpose(Image.Transpose.FLIP_LEFT_RIGHT)
        if plan.flip_vertical:
            img = img.transpose(Image.Transpose.FLIP_TOP_BOTTOM)
        rotation = ROTATIONS[plan.rotate_angle]
        if rotation is not None:
            img = img.transpose(rotation)
    elif plan.size != src.size:
        img = src.resize(plan.size, Image.Resampling.LANCZOS)
    else:
        img = src.copy()

    if not opaque:
        return img
    canvas = Image.new("RGBA", plan.size, WHITE)
    canvas.alpha_composite(img)
    img.close()
    return canvas

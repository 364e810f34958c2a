import re
from enum import Enum
from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from common.config import DEFAULT_FORMAT, DEFAULT_MAX_SIZE_KB
from common.handles import DisplayHandle

OutputFormat = Literal["image/jpeg", "image/png", "image/webp"]

CROP_RATIO_PATTERN = re.compile(r"^(\d+(?:\.\d+)?):(\d+(?:\.\d+)?)$")


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class ErrorKind(str, Enum):
    DECODE = "decode"
    ENCODE = "encode"
    INTERNAL = "internal"


# ---------- Transform settings (tagged by "tool") ----------

class _BaseSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    format: OutputFormat = DEFAULT_FORMAT


class CompressSettings(_BaseSettings):
    tool: Literal["compress"] = "compress"
    max_size_kb: int = Field(default=DEFAULT_MAX_SIZE_KB, gt=0)
    max_width_or_height: int = Field(default=0, ge=0)  # 0 = keep original size

    @property
    def target_bytes(self) -> int:
        return self.max_size_kb * 1024


class ResizeSettings(_BaseSettings):
    tool: Literal["resize"] = "resize"
    resize_mode: Literal["dimensions", "percentage"] = "percentage"
    resize_width: int = Field(default=0, ge=0)
    resize_height: int = Field(default=0, ge=0)
    resize_percentage: int = Field(default=100, ge=1, le=200)
    maintain_aspect_ratio: bool = True


class CropSettings(_BaseSettings):
    tool: Literal["crop"] = "crop"
    crop_ratio: str = "original"

    @field_validator("crop_ratio")
    @classmethod
    def _check_ratio(cls, value: str) -> str:
        if value == "original":
            return value
        match = CROP_RATIO_PATTERN.match(value)
        if not match or float(match.group(1)) <= 0 or float(match.group(2)) <= 0:
            raise ValueError(f"crop_ratio must be 'original' or 'W:H', got {value!r}")
        return value

    @property
    def ratio(self) -> Optional[Tuple[float, float]]:
        """(rw, rh), or None when the original ratio is kept."""
        if self.crop_ratio == "original":
            return None
        rw, rh = self.crop_ratio.split(":")
        return float(rw), float(rh)


class RotateSettings(_BaseSettings):
    tool: Literal["rotate"] = "rotate"
    rotate_angle: Literal[0, 90, 180, 270] = 0
    flip_horizontal: bool = False
    flip_vertical: bool = False


class ConvertSettings(_BaseSettings):
    tool: Literal["convert"] = "convert"


class Md5Settings(_BaseSettings):
    tool: Literal["md5"] = "md5"


TransformSettings = Annotated[
    Union[
        CompressSettings,
        ResizeSettings,
        CropSettings,
        RotateSettings,
        ConvertSettings,
        Md5Settings,
    ],
    Field(discriminator="tool"),
]


class SettingsEnvelope(BaseModel):
    """Wrapper used to parse a settings payload into the right variant."""
    settings: TransformSettings


def parse_settings(data: dict) -> TransformSettings:
    return SettingsEnvelope(settings=data).settings


# ---------- Results and jobs ----------

class Result(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    encoded_bytes: bytes = Field(repr=False)
    mime: OutputFormat
    filename: str
    width: int
    height: int
    original_size: int
    compressed_size: int
    # True/False when a byte budget applied, None when there was none to meet
    target_met: Optional[bool] = None
    handle: DisplayHandle = Field(repr=False, exclude=True)

    @model_validator(mode="after")
    def _check_size(self):
        if self.compressed_size != len(self.encoded_bytes):
            raise ValueError("compressed_size must equal len(encoded_bytes)")
        return self

    @property
    def compression_ratio(self) -> float:
        if not self.original_size:
            return 0.0
        return self.compressed_size / self.original_size

    def summary(self) -> dict:
        return {
            "filename": self.filename,
            "mime": self.mime,
            "width": self.width,
            "height": self.height,
            "original_size": self.original_size,
            "compressed_size": self.compressed_size,
            "compression_ratio": self.compression_ratio,
            "target_met": self.target_met,
            "url": self.handle.url,
        }


class Job(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    name: str
    source_bytes: bytes = Field(repr=False)
    source_mime: str
    status: JobStatus = JobStatus.PENDING
    settings_snapshot: Optional[TransformSettings] = None
    result: Optional[Result] = None
    error: Optional[ErrorKind] = None
    error_detail: Optional[str] = None

    @model_validator(mode="after")
    def _check_state(self):
        if self.status in (JobStatus.PENDING, JobStatus.PROCESSING):
            if self.result is not None or self.error is not None:
                raise ValueError(f"{self.status.value} job cannot carry a result or error")
        elif self.status == JobStatus.COMPLETED:
            if self.result is None or self.error is not None:
                raise ValueError("completed job needs a result and no error")
        elif self.status == JobStatus.ERROR:
            if self.error is None or self.result is not None:
                raise ValueError("failed job needs an error and no result")
        return self

    @property
    def original_size(self) -> int:
        return len(self.source_bytes)

    def summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "original_size": self.original_size,
            "error": self.error.value if self.error else None,
            "error_detail": self.error_detail,
            "result": self.result.summary() if self.result else None,
        }

"""
Imagery Request Models

Validated shapes for transform requests, engine options and tile jobs.
"""

import json
import posixpath
from enum import Enum
from typing import Optional, Tuple, Dict, Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.core.storage import StorageRef


class OutputFormat(str, Enum):
    """Output image formats the engine can encode."""
    AUTO = "auto"
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    GIF = "gif"
    TIFF = "tiff"
    BMP = "bmp"


# Engine fallback when the source format cannot be re-encoded
DEFAULT_OUTPUT_FORMAT = OutputFormat.JPEG

# Candidates considered during Accept negotiation
NEGOTIABLE_FORMATS = {
    "image/webp": OutputFormat.WEBP,
    "image/png": OutputFormat.PNG,
    "image/jpeg": OutputFormat.JPEG,
}

FORMAT_MIME_TYPES = {
    OutputFormat.JPEG: "image/jpeg",
    OutputFormat.PNG: "image/png",
    OutputFormat.WEBP: "image/webp",
    OutputFormat.GIF: "image/gif",
    OutputFormat.TIFF: "image/tiff",
    OutputFormat.BMP: "image/bmp",
}

FORMAT_EXTENSIONS = {
    OutputFormat.JPEG: "jpg",
    OutputFormat.PNG: "png",
    OutputFormat.WEBP: "webp",
    OutputFormat.GIF: "gif",
    OutputFormat.TIFF: "tiff",
    OutputFormat.BMP: "bmp",
}


class Gravity(str, Enum):
    CENTRE = "centre"
    NORTH = "north"
    SOUTH = "south"
    EAST = "east"
    WEST = "west"
    SMART = "smart"


class Operation(str, Enum):
    """Operations exposed under /api/v1/images/{operation}."""
    RESIZE = "resize"
    ENLARGE = "enlarge"
    CROP = "crop"
    SMARTCROP = "smartcrop"
    EXTRACT = "extract"
    ROTATE = "rotate"
    AUTOROTATE = "autorotate"
    FLIP = "flip"
    FLOP = "flop"
    THUMBNAIL = "thumbnail"
    ZOOM = "zoom"
    CONVERT = "convert"
    BLUR = "blur"
    WATERMARK = "watermark"
    WATERMARK_IMAGE = "watermarkimage"
    INFO = "info"
    PIPELINE = "pipeline"


class ImageOptions(BaseModel):
    """Transform parameters parsed from the query string."""

    model_config = ConfigDict(extra="ignore")

    width: int = Field(default=0, ge=0)
    height: int = Field(default=0, ge=0)
    areawidth: int = Field(default=0, ge=0)
    areaheight: int = Field(default=0, ge=0)
    top: int = Field(default=0, ge=0)
    left: int = Field(default=0, ge=0)
    quality: int = Field(default=80, ge=1, le=100)
    compression: int = Field(default=6, ge=0, le=9)
    rotate: int = 0
    factor: int = Field(default=0, ge=0)
    sigma: float = Field(default=0.0, ge=0)
    minampl: float = Field(default=0.0, ge=0)
    opacity: float = Field(default=0.2, ge=0, le=1)
    textwidth: int = Field(default=0, ge=0)
    text: str = ""
    font: str = "sans 10"
    color: Optional[Tuple[int, int, int]] = None
    background: Optional[Tuple[int, int, int]] = None
    force: bool = False
    nocrop: bool = False
    stripmeta: bool = False
    colorspace: Optional[str] = None
    gravity: Gravity = Gravity.CENTRE
    type: str = ""
    image: str = ""  # storage key of the overlay for watermarkimage
    operations: List["PipelineStep"] = Field(default_factory=list)

    @field_validator("color", "background", mode="before")
    @classmethod
    def parse_rgb(cls, v):
        if v is None or v == "":
            return None
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(",") if p.strip()]
            if len(parts) != 3:
                raise ValueError("color must be three comma separated values")
            v = tuple(int(p) for p in parts)
        if any(c < 0 or c > 255 for c in v):
            raise ValueError("color values must be between 0 and 255")
        return v

    @field_validator("rotate")
    @classmethod
    def validate_rotate(cls, v: int) -> int:
        if v % 90 != 0:
            raise ValueError("rotate must be a multiple of 90")
        return v % 360

    @field_validator("colorspace")
    @classmethod
    def validate_colorspace(cls, v: Optional[str]) -> Optional[str]:
        if v and v not in ("srgb", "bw"):
            raise ValueError("colorspace must be srgb or bw")
        return v or None

    @field_validator("gravity", mode="before")
    @classmethod
    def normalize_gravity(cls, v):
        if isinstance(v, str):
            v = v.lower()
            if v == "center":
                return Gravity.CENTRE
        return v

    @field_validator("operations", mode="before")
    @classmethod
    def parse_operations(cls, v):
        """The `operations` query parameter is a JSON array of steps."""
        if v is None or v == "":
            return []
        if isinstance(v, (str, bytes)):
            v = json.loads(v)
        if not isinstance(v, list):
            raise ValueError("operations must be a JSON array")
        return v


# Operations that cannot run as a pipeline step
_NON_CHAINABLE = frozenset({Operation.PIPELINE, Operation.INFO, Operation.WATERMARK_IMAGE})


class PipelineStep(BaseModel):
    """One step of a `pipeline` operation: {"operation": ..., "params": {...}}."""

    model_config = ConfigDict(extra="ignore")

    operation: Operation
    params: ImageOptions = Field(default_factory=ImageOptions)

    @field_validator("operation", mode="before")
    @classmethod
    def normalize_operation(cls, v):
        return v.lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_chainable(self) -> "PipelineStep":
        if self.operation in _NON_CHAINABLE:
            raise ValueError(f"{self.operation.value} cannot be used as a pipeline step")
        if self.params.operations:
            raise ValueError("pipeline steps cannot be nested")
        if self.operation is Operation.CONVERT and not self.params.type:
            raise ValueError("convert step requires params.type")
        return self


ImageOptions.model_rebuild()


class TransformRequest(BaseModel):
    """A validated transform ready for the dispatcher. Not mutated after creation."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    input_bytes: bytes
    input_mime: str
    operation: Operation
    options: ImageOptions
    output_format: Optional[OutputFormat] = None
    negotiated: bool = False
    source: Optional[StorageRef] = None
    destination: Optional[StorageRef] = None


class ImageResult(BaseModel):
    """Engine output."""
    body: bytes
    mime: str


class JobMarkerState(str, Enum):
    """Literal marker bodies; a failure writes the error message instead."""
    PENDING = "pending"
    OK = "ok"


class TileJobState(str, Enum):
    CREATED = "created"
    STAGED = "staged"
    DOWNLOADED = "downloaded"
    TILED = "tiled"
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"


class TileJobSpec(BaseModel):
    """Tile pyramid job submission body."""

    model_config = ConfigDict(populate_by_name=True)

    provider: str = ""
    image_key: str = Field(alias="imageKey")
    container: str = ""
    temp_container: str = Field(default="", alias="tempContainer")
    container_zone: str = Field(default="", alias="containerZone")
    sas_token: str = Field(default="", alias="sasToken")
    account_name: str = Field(default="", alias="accountName")

    @field_validator("image_key")
    @classmethod
    def validate_image_key(cls, v: str) -> str:
        if not v or v.endswith("/"):
            raise ValueError("imageKey must name a file")
        return v

    @model_validator(mode="after")
    def apply_defaults(self) -> "TileJobSpec":
        if not self.temp_container:
            self.temp_container = self.container
        if not self.provider:
            self.provider = "azure"
        return self

    @property
    def key_dir(self) -> str:
        return posixpath.split(self.image_key)[0]

    @property
    def image_name(self) -> str:
        """Base name of the image without its extension."""
        return posixpath.splitext(posixpath.basename(self.image_key))[0]

    @property
    def extension(self) -> str:
        return posixpath.splitext(self.image_key)[1]

    @property
    def status_key(self) -> str:
        return posixpath.join(self.key_dir, self.image_name + ".txt")

    @property
    def index_key(self) -> str:
        return posixpath.join(self.key_dir, self.image_name + ".dzi")

    def to_task_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

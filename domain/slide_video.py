"""Domain types and parsing for slide_video."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
import re
import uuid
from typing import Any, Mapping, Tuple

INVALID_PROJECT_CODE = "slide_video.input.invalid_project"
INVALID_SLIDE_CODE = "slide_video.input.invalid_slide"
INVALID_COLOR_CODE = "slide_video.input.invalid_color"
EMPTY_PROJECT_CODE = "slide_video.input.empty_project"
TOO_MANY_FRAMES_CODE = "slide_video.input.too_many_frames"
INPUT_FILE_CODE = "slide_video.input.file_error"
ENGINE_INIT_CODE = "slide_video.engine.init_failed"
ENGINE_NOT_FOUND_CODE = "slide_video.engine.not_found"
ENGINE_UNSUPPORTED_CODE = "slide_video.engine.unsupported"
RASTER_SURFACE_CODE = "slide_video.raster.surface_unavailable"
RASTER_FONT_CODE = "slide_video.raster.font_unavailable"
ENCODE_NOT_READY_CODE = "slide_video.encode.not_ready"
ENCODE_ORDER_CODE = "slide_video.encode.out_of_order"
ENCODE_INGEST_CODE = "slide_video.encode.ingest_failed"
ENCODE_INCONSISTENT_CODE = "slide_video.encode.inconsistent_staging"
ENCODE_NO_FRAMES_CODE = "slide_video.encode.no_frames"
ENCODE_PROCESS_CODE = "slide_video.encode.process_failed"
ENCODE_OUTPUT_CODE = "slide_video.encode.output_unavailable"
PIPELINE_CANCELLED_CODE = "slide_video.pipeline.cancelled"
PIPELINE_BUSY_CODE = "slide_video.pipeline.busy"
PIPELINE_UNEXPECTED_CODE = "slide_video.pipeline.unexpected_error"

WEBM_MIME_TYPE = "video/webm"
DEFAULT_WIDTH = 720
DEFAULT_HEIGHT = 1280
DEFAULT_FPS = 30
DEFAULT_SLIDE_SECONDS = 2
# frame_%05d names stop sorting lexicographically past this count
MAX_TOTAL_FRAMES = 100_000

HEX_COLOR_PATTERN = re.compile(r"#([0-9a-fA-F]{6}|[0-9a-fA-F]{3})")

RGB = Tuple[int, int, int]


class SlideVideoError(Exception):
    """Pipeline error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class InvalidProjectError(SlideVideoError, ValueError):
    """Project or slide values failed validation."""


class EngineInitError(SlideVideoError, RuntimeError):
    """The encoding engine could not be constructed or loaded."""


class RasterError(SlideVideoError, RuntimeError):
    """A drawing surface or font could not be used."""


class EncodeError(SlideVideoError, RuntimeError):
    """Staging or encoding failed inside the engine."""

    def __init__(self, code: str, message: str, diagnostic: str = "") -> None:
        super().__init__(code, message)
        self.diagnostic = diagnostic


class PipelineCancelledError(SlideVideoError, RuntimeError):
    """The run observed a cancellation request."""


class PipelineBusyError(SlideVideoError, RuntimeError):
    """A run is already in flight on this pipeline."""


def validate_rgb(value: RGB, label: str) -> None:
    """Validate a 3-channel 8-bit color tuple."""
    if len(value) != 3:
        raise InvalidProjectError(INVALID_COLOR_CODE, f"{label} must have 3 channels")
    for channel in value:
        if not isinstance(channel, int) or channel < 0 or channel > 255:
            raise InvalidProjectError(
                INVALID_COLOR_CODE, f"{label} channel out of range"
            )


@dataclass(frozen=True)
class Slide:
    """One text screen with timing and color styling."""

    text: str
    duration_seconds: float
    background_rgb: RGB
    text_rgb: RGB
    slide_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if not isinstance(self.text, str):
            raise InvalidProjectError(INVALID_SLIDE_CODE, "slide text must be a string")
        if isinstance(self.duration_seconds, bool) or not isinstance(
            self.duration_seconds, (int, float)
        ):
            raise InvalidProjectError(
                INVALID_SLIDE_CODE, "slide duration must be a number"
            )
        if not math.isfinite(self.duration_seconds) or self.duration_seconds < 0:
            raise InvalidProjectError(
                INVALID_SLIDE_CODE, "slide duration must be non-negative"
            )
        validate_rgb(self.background_rgb, "background color")
        validate_rgb(self.text_rgb, "text color")
        if not self.slide_id:
            raise InvalidProjectError(INVALID_SLIDE_CODE, "slide id must be non-empty")


def validate_dimensions(width: int, height: int, fps: int) -> None:
    """Validate canvas dimensions and frame rate."""
    for label, value in (("width", width), ("height", height), ("fps", fps)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidProjectError(INVALID_PROJECT_CODE, f"{label} must be an integer")
        if value <= 0:
            raise InvalidProjectError(INVALID_PROJECT_CODE, f"{label} must be positive")


@dataclass(frozen=True)
class Project:
    """Ordered slides plus canvas size and frame rate."""

    slides: Tuple[Slide, ...]
    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    fps: int = DEFAULT_FPS

    def __post_init__(self) -> None:
        object.__setattr__(self, "slides", tuple(self.slides))
        validate_dimensions(self.width, self.height, self.fps)
        for slide in self.slides:
            if not isinstance(slide, Slide):
                raise InvalidProjectError(
                    INVALID_PROJECT_CODE, "slides must contain Slide values"
                )


@dataclass(frozen=True)
class LayoutResult:
    """Font size and wrapped lines computed for one slide."""

    font_size: int
    lines: Tuple[str, ...]


@dataclass(frozen=True)
class Frame:
    """One rasterized still image at a global sequence position."""

    sequence_index: int
    image_bytes: bytes

    def __post_init__(self) -> None:
        if self.sequence_index < 0:
            raise InvalidProjectError(
                INVALID_PROJECT_CODE, "sequence_index must be non-negative"
            )


@dataclass(frozen=True)
class EncodedVideo:
    """Encoded video bytes and their MIME type."""

    data: bytes
    mime_type: str = WEBM_MIME_TYPE


def parse_hex_color(color_value: str) -> RGB:
    """Parse a #rrggbb or #rgb token into an RGB tuple."""
    if not isinstance(color_value, str):
        raise InvalidProjectError(
            INVALID_COLOR_CODE, f"invalid color value: {color_value!r}"
        )
    match_value = HEX_COLOR_PATTERN.fullmatch(color_value.strip())
    if not match_value:
        raise InvalidProjectError(
            INVALID_COLOR_CODE, f"invalid color value: {color_value!r}"
        )
    hex_digits = match_value.group(1)
    if len(hex_digits) == 3:
        hex_digits = "".join(digit * 2 for digit in hex_digits)
    return (
        int(hex_digits[0:2], 16),
        int(hex_digits[2:4], 16),
        int(hex_digits[4:6], 16),
    )


def read_int_field(payload: Mapping[str, Any], key: str, fallback: int) -> int:
    """Read an integer field from a JSON payload."""
    raw_value = payload.get(key, fallback)
    if isinstance(raw_value, bool):
        raise InvalidProjectError(INVALID_PROJECT_CODE, f"{key} must be an integer")
    if isinstance(raw_value, float) and raw_value.is_integer():
        raw_value = int(raw_value)
    if not isinstance(raw_value, int):
        raise InvalidProjectError(INVALID_PROJECT_CODE, f"{key} must be an integer")
    return raw_value


def parse_slide(payload: Mapping[str, Any]) -> Slide:
    """Parse one slide from the editor's JSON shape."""
    if not isinstance(payload, Mapping):
        raise InvalidProjectError(INVALID_SLIDE_CODE, "slide must be an object")
    background = payload.get("backgroundColor", payload.get("bg"))
    if background is None:
        raise InvalidProjectError(INVALID_SLIDE_CODE, "slide background is required")
    text_color = payload.get("textColor")
    if text_color is None:
        raise InvalidProjectError(INVALID_SLIDE_CODE, "slide textColor is required")
    duration = payload.get("durationSec", DEFAULT_SLIDE_SECONDS)
    slide_id = payload.get("id")
    slide_kwargs: dict[str, Any] = {}
    if slide_id is not None:
        slide_kwargs["slide_id"] = str(slide_id)
    return Slide(
        text=payload.get("text", ""),
        duration_seconds=duration,
        background_rgb=parse_hex_color(background),
        text_rgb=parse_hex_color(text_color),
        **slide_kwargs,
    )


def parse_project(payload: Mapping[str, Any]) -> Project:
    """Parse a project from the editor's JSON shape."""
    if not isinstance(payload, Mapping):
        raise InvalidProjectError(INVALID_PROJECT_CODE, "project must be an object")
    raw_slides = payload.get("slides", [])
    if not isinstance(raw_slides, list):
        raise InvalidProjectError(INVALID_PROJECT_CODE, "slides must be a list")
    return Project(
        slides=tuple(parse_slide(raw_slide) for raw_slide in raw_slides),
        width=read_int_field(payload, "width", DEFAULT_WIDTH),
        height=read_int_field(payload, "height", DEFAULT_HEIGHT),
        fps=read_int_field(payload, "fps", DEFAULT_FPS),
    )


def new_slide() -> Slide:
    """Return the default slide added by the editor."""
    return Slide(
        text="New slide",
        duration_seconds=DEFAULT_SLIDE_SECONDS,
        background_rgb=parse_hex_color("#1f2937"),
        text_rgb=parse_hex_color("#ffffff"),
    )


def default_project() -> Project:
    """Return the editor's demo project."""
    return Project(
        slides=(
            Slide(
                text="Welcome to Video Generator",
                duration_seconds=DEFAULT_SLIDE_SECONDS,
                background_rgb=parse_hex_color("#0ea5e9"),
                text_rgb=parse_hex_color("#ffffff"),
            ),
            Slide(
                text="Type text, pick colors, export WebM",
                duration_seconds=DEFAULT_SLIDE_SECONDS,
                background_rgb=parse_hex_color("#111827"),
                text_rgb=parse_hex_color("#f97316"),
            ),
        ),
        width=DEFAULT_WIDTH,
        height=DEFAULT_HEIGHT,
        fps=DEFAULT_FPS,
    )

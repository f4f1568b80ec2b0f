"""Slide rasterization onto Pillow surfaces."""

from __future__ import annotations

from io import BytesIO
import logging
import math
import os
import threading
from typing import Tuple

from PIL import Image, ImageDraw, ImageFont

from domain.slide_video import (
    RASTER_FONT_CODE,
    RASTER_SURFACE_CODE,
    LayoutResult,
    RasterError,
    Slide,
)
from service.text_layout import (
    LINE_HEIGHT_RATIO,
    block_height,
    initial_font_size,
    layout_text,
)

LOGGER = logging.getLogger("slide_video.raster")

MARGIN_RATIO = 0.08
SURFACE_MODE = "RGB"
IMAGE_FORMAT = "PNG"
FONT_SAMPLE_SIZE = 32
BOLD_SANS_FONT_FILES = (
    "DejaVuSans-Bold.ttf",
    "LiberationSans-Bold.ttf",
    "Arial Bold.ttf",
    "arialbd.ttf",
    "Helvetica-Bold.ttf",
    "NotoSans-Bold.ttf",
    "Roboto-Bold.ttf",
    "FreeSansBold.ttf",
)
FONT_EXTENSIONS = (".ttf", ".otf")


def list_font_candidates(fonts_dir: str | None) -> list[str]:
    """List font paths or names to try, most preferred first."""
    candidates: list[str] = []
    if fonts_dir is not None:
        if not os.path.isdir(fonts_dir):
            raise RasterError(RASTER_FONT_CODE, f"fonts directory does not exist: {fonts_dir}")
        entries = sorted(
            entry_name
            for entry_name in os.listdir(fonts_dir)
            if entry_name.lower().endswith(FONT_EXTENSIONS)
        )
        preferred = [name for name in BOLD_SANS_FONT_FILES if name in entries]
        others = [name for name in entries if name not in preferred]
        candidates.extend(os.path.join(fonts_dir, name) for name in preferred + others)
    candidates.extend(BOLD_SANS_FONT_FILES)
    return candidates


class FontResolver:
    """Resolve a bold sans-serif font once and cache it per size."""

    def __init__(self, fonts_dir: str | None = None) -> None:
        self.fonts_dir = fonts_dir
        self._source: str | None = None
        self._resolved = False
        self._cache: dict[int, ImageFont.FreeTypeFont] = {}
        self._lock = threading.Lock()

    @property
    def source(self) -> str | None:
        """Font file in use, or None for Pillow's bundled font."""
        self._resolve()
        return self._source

    def _resolve(self) -> None:
        if self._resolved:
            return
        for candidate in list_font_candidates(self.fonts_dir):
            try:
                ImageFont.truetype(candidate, size=FONT_SAMPLE_SIZE)
            except OSError:
                continue
            self._source = candidate
            break
        else:
            LOGGER.warning(
                "%s: no bold sans-serif font found, using Pillow default",
                RASTER_FONT_CODE,
            )
        self._resolved = True

    def font(self, font_size: int) -> ImageFont.FreeTypeFont:
        """Return the resolved font at a pixel size."""
        with self._lock:
            cached_font = self._cache.get(font_size)
            if cached_font is not None:
                return cached_font
            self._resolve()
            try:
                if self._source is None:
                    font = ImageFont.load_default(size=font_size)
                else:
                    font = ImageFont.truetype(self._source, size=font_size)
            except (OSError, ValueError) as exc:
                raise RasterError(
                    RASTER_FONT_CODE, f"failed to load font at size {font_size}"
                ) from exc
            self._cache[font_size] = font
            return font


class PillowTextMeasurer:
    """Measure text widths with the resolved font."""

    def __init__(self, fonts: FontResolver) -> None:
        self.fonts = fonts
        self._draw = ImageDraw.Draw(Image.new(SURFACE_MODE, (1, 1)))

    def __call__(self, text_value: str, font_size: int) -> float:
        if not text_value:
            return 0.0
        return float(self._draw.textlength(text_value, font=self.fonts.font(font_size)))


def compute_text_box(width: int, height: int) -> Tuple[int, int]:
    """Return the maximum text block width and height for a canvas."""
    margin = int(width * MARGIN_RATIO)
    return width - margin * 2, height


def compute_line_positions(height: int, layout: LayoutResult) -> Tuple[float, ...]:
    """Return vertical centers for each line of a vertically centered block."""
    total_height = block_height(len(layout.lines), layout.font_size)
    line_step = layout.font_size * LINE_HEIGHT_RATIO
    start_y = height / 2 - total_height / 2 + layout.font_size / 2
    return tuple(start_y + line_step * index for index in range(len(layout.lines)))


def paint_slide(
    surface: Image.Image,
    slide: Slide,
    layout: LayoutResult,
    font: ImageFont.FreeTypeFont,
) -> None:
    """Paint background and centered text lines onto a surface."""
    if surface is None:
        raise RasterError(RASTER_SURFACE_CODE, "drawing surface unavailable")
    width, height = surface.size
    try:
        draw_context = ImageDraw.Draw(surface)
    except (ValueError, AttributeError) as exc:
        raise RasterError(RASTER_SURFACE_CODE, "drawing surface unavailable") from exc

    max_width, _ = compute_text_box(width, height)
    center_x = width / 2
    try:
        draw_context.rectangle((0, 0, width, height), fill=slide.background_rgb)
        for line, center_y in zip(layout.lines, compute_line_positions(height, layout)):
            line_width = draw_context.textlength(line, font=font)
            if line_width > max_width:
                paste_squeezed_line(
                    surface,
                    draw_context,
                    line,
                    font,
                    slide.text_rgb,
                    (center_x, center_y),
                    max_width / line_width,
                )
                continue
            draw_context.text(
                (center_x, center_y),
                line,
                font=font,
                fill=slide.text_rgb,
                anchor="mm",
            )
    except (OSError, ValueError) as exc:
        raise RasterError(RASTER_SURFACE_CODE, f"failed to paint slide: {exc}") from exc


def paste_squeezed_line(
    surface: Image.Image,
    draw_context: ImageDraw.ImageDraw,
    line: str,
    font: ImageFont.FreeTypeFont,
    fill_rgb: Tuple[int, int, int],
    center: Tuple[float, float],
    scale_x: float,
) -> None:
    """Draw a line narrowed horizontally by scale_x around its center."""
    center_x, center_y = center
    bbox = draw_context.textbbox(center, line, font=font, anchor="mm")
    left, top = math.floor(bbox[0]), math.floor(bbox[1])
    sprite_width = max(1, math.ceil(bbox[2]) - left)
    sprite_height = max(1, math.ceil(bbox[3]) - top)
    sprite = Image.new("RGBA", (sprite_width, sprite_height), fill_rgb + (0,))
    ImageDraw.Draw(sprite).text(
        (center_x - left, center_y - top),
        line,
        font=font,
        fill=fill_rgb + (255,),
        anchor="mm",
    )
    squeezed_width = max(1, int(sprite_width * scale_x))
    sprite = sprite.resize((squeezed_width, sprite_height), Image.Resampling.LANCZOS)
    paste_left = int(round(center_x + (left - center_x) * scale_x))
    surface.paste(sprite, (paste_left, top), sprite)


def encode_surface(surface: Image.Image) -> bytes:
    """Encode a surface as PNG bytes."""
    buffer = BytesIO()
    try:
        surface.save(buffer, format=IMAGE_FORMAT)
    except (OSError, ValueError) as exc:
        raise RasterError(RASTER_SURFACE_CODE, f"failed to encode frame: {exc}") from exc
    return buffer.getvalue()


class SlideRasterizer:
    """Render slides at a fixed canvas size."""

    def __init__(self, width: int, height: int, fonts: FontResolver | None = None) -> None:
        self.width = width
        self.height = height
        self.fonts = fonts if fonts is not None else FontResolver()
        self.measure = PillowTextMeasurer(self.fonts)

    def layout(self, slide: Slide) -> LayoutResult:
        max_width, max_height = compute_text_box(self.width, self.height)
        return layout_text(
            slide.text,
            max_width,
            max_height,
            self.measure,
            start_size=initial_font_size(self.width),
        )

    def new_surface(self, slide: Slide) -> Image.Image:
        try:
            return Image.new(SURFACE_MODE, (self.width, self.height), slide.background_rgb)
        except (ValueError, MemoryError) as exc:
            raise RasterError(
                RASTER_SURFACE_CODE,
                f"cannot allocate {self.width}x{self.height} surface",
            ) from exc

    def render_surface(self, slide: Slide, layout: LayoutResult | None = None) -> Image.Image:
        """Rasterize a slide and return the painted surface."""
        if layout is None:
            layout = self.layout(slide)
        surface = self.new_surface(slide)
        paint_slide(surface, slide, layout, self.fonts.font(layout.font_size))
        return surface

    def render(self, slide: Slide, layout: LayoutResult | None = None) -> bytes:
        """Rasterize a slide and return encoded still-image bytes."""
        return encode_surface(self.render_surface(slide, layout))

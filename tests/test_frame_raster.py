"""Tests for slide rasterization with Pillow."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

from domain.slide_video import LayoutResult, RasterError, Slide
from service.frame_raster import (
    FontResolver,
    PillowTextMeasurer,
    SlideRasterizer,
    compute_line_positions,
    compute_text_box,
    encode_surface,
    list_font_candidates,
    paint_slide,
)

BLACK = (0, 0, 0)
WHITE = (255, 255, 255)


def make_slide(text_value: str = "Hello") -> Slide:
    """Build a white-on-black slide."""
    return Slide(
        text=text_value,
        duration_seconds=1,
        background_rgb=BLACK,
        text_rgb=WHITE,
    )


def decode_png(image_bytes: bytes) -> Image.Image:
    """Decode PNG bytes into an RGB image."""
    image = Image.open(BytesIO(image_bytes))
    image.load()
    return image.convert("RGB")


def test_text_box_has_eight_percent_side_margins() -> None:
    """Inset the text width by 8% of the canvas width on both sides."""
    assert compute_text_box(720, 1280) == (720 - 57 * 2, 1280)
    assert compute_text_box(100, 50) == (84, 50)


def test_line_positions_center_the_block() -> None:
    """Center the block vertically and step by 1.25 line heights."""
    layout = LayoutResult(font_size=20, lines=("one", "two"))

    assert compute_line_positions(100, layout) == (35.0, 60.0)


def test_single_line_offsets_by_half_font_size() -> None:
    """Offset the first line by half the font size from the block top."""
    layout = LayoutResult(font_size=40, lines=("only",))

    # 640 - 50 / 2 + 40 / 2
    assert compute_line_positions(1280, layout) == (635.0,)


def test_render_fills_background_and_draws_text() -> None:
    """Paint the background everywhere except where text is drawn."""
    rasterizer = SlideRasterizer(200, 120)

    image = decode_png(rasterizer.render(make_slide("Hello")))

    assert image.size == (200, 120)
    for corner in ((0, 0), (199, 0), (0, 119), (199, 119)):
        assert image.getpixel(corner) == BLACK
    colors = {color for _, color in image.getcolors(maxcolors=200 * 120)}
    assert len(colors) > 1


def test_render_without_text_is_solid_background() -> None:
    """Render only the background for blank text."""
    rasterizer = SlideRasterizer(64, 48)
    slide = Slide(
        text="   ",
        duration_seconds=1,
        background_rgb=(14, 165, 233),
        text_rgb=WHITE,
    )

    image = decode_png(rasterizer.render(slide))

    assert image.getcolors() == [(64 * 48, (14, 165, 233))]


def test_render_is_deterministic() -> None:
    """Produce identical bytes for identical slides."""
    rasterizer = SlideRasterizer(160, 90)
    slide = make_slide("Type text, pick colors, export WebM")

    assert rasterizer.render(slide) == rasterizer.render(slide)


def test_layout_uses_canvas_width_for_start_size() -> None:
    """Size short text from the canvas width."""
    rasterizer = SlideRasterizer(720, 1280)

    layout = rasterizer.layout(make_slide("Hi"))

    assert layout.font_size == 55
    assert layout.lines == ("Hi",)


def test_paint_slide_rejects_missing_surface() -> None:
    """Raise RasterError when no surface is available."""
    fonts = FontResolver()
    layout = LayoutResult(font_size=20, lines=("x",))

    with pytest.raises(RasterError):
        paint_slide(None, make_slide(), layout, fonts.font(20))  # type: ignore[arg-type]


def test_measurer_grows_with_font_size() -> None:
    """Measure wider text at larger sizes."""
    measure = PillowTextMeasurer(FontResolver())

    assert measure("", 40) == 0.0
    assert measure("Hello", 40) > measure("Hello", 20) > 0


def test_font_resolver_caches_by_size() -> None:
    """Return the same font object for repeated sizes."""
    fonts = FontResolver()

    assert fonts.font(24) is fonts.font(24)


def test_missing_fonts_dir_raises_raster_error(tmp_path: Path) -> None:
    """Fail clearly when a configured fonts directory is absent."""
    with pytest.raises(RasterError):
        list_font_candidates(str(tmp_path / "missing"))


def test_fonts_dir_entries_come_first(tmp_path: Path) -> None:
    """Prefer configured font files, then the named fallback chain."""
    (tmp_path / "Custom-Bold.otf").write_bytes(b"")
    (tmp_path / "DejaVuSans-Bold.ttf").write_bytes(b"")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

    candidates = list_font_candidates(str(tmp_path))

    assert candidates[0] == str(tmp_path / "DejaVuSans-Bold.ttf")
    assert candidates[1] == str(tmp_path / "Custom-Bold.otf")
    assert "notes.txt" not in " ".join(candidates)
    assert candidates[2] == "DejaVuSans-Bold.ttf"


def test_unloadable_fonts_fall_back(tmp_path: Path) -> None:
    """Skip font files that cannot be opened."""
    (tmp_path / "Broken.ttf").write_bytes(b"not a font")
    fonts = FontResolver(str(tmp_path))

    assert fonts.source != str(tmp_path / "Broken.ttf")
    assert fonts.font(30) is not None


def ink_columns(image: Image.Image, background: tuple[int, int, int]) -> list[int]:
    """Return the x positions of columns holding non-background pixels."""
    width, height = image.size
    pixels = image.load()
    return [
        x_value
        for x_value in range(width)
        if any(pixels[x_value, y_value] != background for y_value in range(height))
    ]


def test_overlong_line_is_squeezed_into_text_box() -> None:
    """Narrow a line wider than the inset box instead of clipping it."""
    rasterizer = SlideRasterizer(200, 400)
    word = "Supercalifragilisticexpialidocious"
    layout = LayoutResult(font_size=28, lines=(word,))

    image = decode_png(rasterizer.render(make_slide(word), layout))

    columns = ink_columns(image, BLACK)
    # inset box spans x=16..183 on a 200px canvas
    assert columns
    assert min(columns) >= 15
    assert max(columns) <= 184
    assert max(columns) - min(columns) > 100


def test_fitting_line_is_not_squeezed() -> None:
    """Draw lines that fit at their natural width."""
    fonts = FontResolver()
    rasterizer = SlideRasterizer(400, 200, fonts)
    layout = LayoutResult(font_size=28, lines=("Hi",))

    image = decode_png(rasterizer.render(make_slide("Hi"), layout))

    columns = ink_columns(image, BLACK)
    natural_width = PillowTextMeasurer(fonts)("Hi", 28)
    assert max(columns) - min(columns) + 1 <= natural_width + 2
    assert max(columns) - min(columns) + 1 >= natural_width / 2


def test_encode_failure_raises_raster_error() -> None:
    """Wrap image encoder failures in RasterError."""
    with pytest.raises(RasterError) as exc_info:
        encode_surface(Image.new("CMYK", (4, 4)))

    assert exc_info.value.code == "slide_video.raster.surface_unavailable"

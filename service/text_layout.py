"""Adaptive word wrapping and font sizing for slide text."""

from __future__ import annotations

from typing import Callable, Sequence, Tuple

from domain.slide_video import LayoutResult

START_FONT_MIN = 28
START_FONT_DIVISOR = 13
FONT_SIZE_FLOOR = 18
FONT_SIZE_STEP = 2
LINE_HEIGHT_RATIO = 1.25
FILL_HEIGHT_RATIO = 0.7

TextMeasurer = Callable[[str, int], float]


def initial_font_size(reference_width: int) -> int:
    """Return the starting font size for a canvas width."""
    return max(START_FONT_MIN, reference_width // START_FONT_DIVISOR)


def block_height(line_count: int, font_size: int) -> float:
    """Return the height of a block of lines at a font size."""
    return line_count * font_size * LINE_HEIGHT_RATIO


def wrap_words(
    words: Sequence[str],
    max_width: float,
    font_size: int,
    measure: TextMeasurer,
) -> Tuple[str, ...]:
    """Greedily wrap words into lines no wider than max_width.

    A word that alone exceeds max_width is kept whole on its own line.
    """
    lines: list[str] = []
    current = ""
    for word in words:
        candidate = f"{current} {word}" if current else word
        if measure(candidate, font_size) > max_width:
            if current:
                lines.append(current)
            current = word
        else:
            current = candidate
    if current:
        lines.append(current)
    return tuple(lines)


def layout_text(
    text: str,
    max_width: float,
    max_height: float,
    measure: TextMeasurer,
    start_size: int | None = None,
) -> LayoutResult:
    """Find the largest font size whose wrapped block fits the box.

    The search walks down from the start size in fixed steps and stops at
    the floor size, accepting the wrapping found there even if it
    overflows.
    """
    font_size = start_size if start_size is not None else initial_font_size(int(max_width))
    font_size = max(FONT_SIZE_FLOOR, font_size)
    words = text.split()
    height_limit = max_height * FILL_HEIGHT_RATIO

    while True:
        lines = wrap_words(words, max_width, font_size, measure)
        if block_height(len(lines), font_size) < height_limit:
            break
        if font_size - FONT_SIZE_STEP < FONT_SIZE_FLOOR:
            break
        font_size -= FONT_SIZE_STEP

    return LayoutResult(font_size=font_size, lines=lines)

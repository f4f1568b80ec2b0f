"""Expansion of slides into an ordered frame sequence."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Iterator, Protocol, Tuple

from domain.slide_video import (
    MAX_TOTAL_FRAMES,
    TOO_MANY_FRAMES_CODE,
    Frame,
    InvalidProjectError,
    LayoutResult,
    Project,
    Slide,
    validate_dimensions,
)

FRAME_IMAGE_EXTENSION = "png"
FRAME_NAME_PATTERN = f"frame_%05d.{FRAME_IMAGE_EXTENSION}"


class Rasterizer(Protocol):
    """Rendering capability consumed by the sequence builder."""

    def layout(self, slide: Slide) -> LayoutResult: ...

    def render(self, slide: Slide, layout: LayoutResult | None = None) -> bytes: ...


@dataclass(frozen=True)
class FrameSlot:
    """Position of one frame in the output timeline."""

    sequence_index: int
    slide_index: int
    slide_frame_index: int


def frame_count(duration_seconds: float, fps: int) -> int:
    """Return the number of frames a slide occupies."""
    scaled_frames = duration_seconds * fps + 0.5
    if not math.isfinite(scaled_frames):
        raise InvalidProjectError(
            TOO_MANY_FRAMES_CODE,
            f"slide duration {duration_seconds} at {fps} fps has no finite frame count",
        )
    # half rounds up
    return max(1, int(math.floor(scaled_frames)))


def frame_file_name(sequence_index: int) -> str:
    """Return the staged file name for a frame index."""
    return FRAME_NAME_PATTERN % sequence_index


class FrameSequence:
    """Finite, restartable sequence of rasterized frames for a project."""

    def __init__(self, project: Project, rasterizer: Rasterizer) -> None:
        validate_dimensions(project.width, project.height, project.fps)
        self.project = project
        self.rasterizer = rasterizer
        self.frame_counts: Tuple[int, ...] = tuple(
            frame_count(slide.duration_seconds, project.fps) for slide in project.slides
        )
        self.total_frames = sum(self.frame_counts)
        if self.total_frames > MAX_TOTAL_FRAMES:
            raise InvalidProjectError(
                TOO_MANY_FRAMES_CODE,
                f"project needs {self.total_frames} frames, limit is {MAX_TOTAL_FRAMES}",
            )
        self._layouts: dict[int, LayoutResult] = {}

    def __len__(self) -> int:
        return self.total_frames

    def __iter__(self) -> Iterator[Frame]:
        for slot in self.slots():
            yield self.render(slot)

    def slots(self) -> Iterator[FrameSlot]:
        """Yield frame slots in temporal order."""
        sequence_index = 0
        for slide_index, count in enumerate(self.frame_counts):
            for slide_frame_index in range(count):
                yield FrameSlot(
                    sequence_index=sequence_index,
                    slide_index=slide_index,
                    slide_frame_index=slide_frame_index,
                )
                sequence_index += 1

    def slide_layout(self, slide_index: int) -> LayoutResult:
        """Return the layout for a slide, computing it once."""
        layout = self._layouts.get(slide_index)
        if layout is None:
            layout = self.rasterizer.layout(self.project.slides[slide_index])
            self._layouts[slide_index] = layout
        return layout

    def prepare_layouts(self) -> Tuple[LayoutResult, ...]:
        """Compute every slide layout up front."""
        return tuple(self.slide_layout(index) for index in range(len(self.project.slides)))

    def render(self, slot: FrameSlot) -> Frame:
        """Rasterize the frame for one slot."""
        slide = self.project.slides[slot.slide_index]
        image_bytes = self.rasterizer.render(slide, self.slide_layout(slot.slide_index))
        return Frame(sequence_index=slot.sequence_index, image_bytes=image_bytes)


def build_frame_sequence(project: Project, rasterizer: Rasterizer) -> FrameSequence:
    """Build the frame sequence for a project."""
    return FrameSequence(project, rasterizer)

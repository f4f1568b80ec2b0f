"""Tests for pipeline orchestration."""

from __future__ import annotations

from typing import Callable, Sequence

import pytest

from domain.slide_video import (
    InvalidProjectError,
    LayoutResult,
    Project,
    Slide,
)
from service.encoder import EncoderAdapter, EngineRunError
from service.frame_raster import SlideRasterizer
from service.pipeline import PipelineState, SlideVideoPipeline


class RecordingEngine:
    """In-memory engine that keeps a copy of every staged frame."""

    def __init__(self, fail_load: bool = False, fail_run: bool = False) -> None:
        self.loaded = False
        self.load_calls = 0
        self.fail_load = fail_load
        self.fail_run = fail_run
        self.files: dict[str, bytes] = {}
        self.staged: list[tuple[str, bytes]] = []
        self.runs: list[tuple[str, ...]] = []
        self.on_write: Callable[[int], None] | None = None

    def ready(self) -> bool:
        return self.loaded

    def load(self) -> None:
        self.load_calls += 1
        if self.fail_load:
            raise OSError("engine download failed")
        self.loaded = True

    def write_file(self, name: str, data: bytes) -> None:
        self.files[name] = data
        self.staged.append((name, data))
        if self.on_write is not None:
            self.on_write(len(self.staged))

    def read_file(self, name: str) -> bytes:
        return self.files[name]

    def remove_file(self, name: str) -> None:
        del self.files[name]

    def run(self, args: Sequence[str]) -> None:
        self.runs.append(tuple(args))
        if self.fail_run:
            raise EngineRunError("ffmpeg failed with exit code 1. broken", "broken")
        self.files[args[-1]] = b"\x1a\x45\xdf\xa3webm"

    def close(self) -> None:
        self.loaded = False


class TextRasterizer:
    """Rasterizer that returns the slide text as image bytes."""

    def __init__(self, width: int, height: int) -> None:
        self.width = width
        self.height = height

    def layout(self, slide: Slide) -> LayoutResult:
        return LayoutResult(font_size=20, lines=(slide.text,))

    def render(self, slide: Slide, layout: LayoutResult | None = None) -> bytes:
        return slide.text.encode("utf-8")


def make_slide(text_value: str, duration_seconds: float = 1) -> Slide:
    """Build a slide with fixed colors."""
    return Slide(
        text=text_value,
        duration_seconds=duration_seconds,
        background_rgb=(0, 0, 0),
        text_rgb=(255, 255, 255),
    )


def make_pipeline(
    engine: RecordingEngine,
    render_workers: int = 1,
    on_progress: Callable[[str], None] | None = None,
) -> SlideVideoPipeline:
    """Wire a pipeline around the recording engine and text rasterizer."""
    return SlideVideoPipeline(
        EncoderAdapter(lambda: engine),
        rasterizer_factory=TextRasterizer,
        render_workers=render_workers,
        on_progress=on_progress,
    )


def test_single_slide_renders_identical_frames() -> None:
    """Stage 30 identical frames for a one second slide at 30 fps."""
    engine = RecordingEngine()
    pipeline = SlideVideoPipeline(EncoderAdapter(lambda: engine))
    slide = Slide(
        text="Hello",
        duration_seconds=1,
        background_rgb=(0, 0, 0),
        text_rgb=(255, 255, 255),
    )

    result = pipeline.run(Project(slides=(slide,), width=720, height=1280, fps=30))

    assert result.succeeded
    assert result.state == PipelineState.DONE
    assert result.video is not None
    assert result.video.mime_type == "video/webm"
    assert result.video.data
    assert len(engine.staged) == 30
    assert len({data for _, data in engine.staged}) == 1
    assert engine.staged[0][1] == SlideRasterizer(720, 1280).render(slide)
    assert engine.runs[0][:2] == ("-framerate", "30")
    assert engine.files == {}


def test_progress_log_is_ordered() -> None:
    """Report each phase in order and end with Done."""
    messages: list[str] = []
    engine = RecordingEngine()
    pipeline = make_pipeline(engine, on_progress=messages.append)

    result = pipeline.run(Project(slides=(make_slide("a", 2), make_slide("b", 1.5))))

    assert result.log == (
        "Loading ffmpeg ...",
        "ffmpeg ready.",
        "Rendering 105 frames ...",
        "Staging 105 frames ...",
        "Encoding ...",
        "Done.",
    )
    assert tuple(messages) == result.log
    assert [name for name, _ in engine.staged][104] == "frame_00104.png"


def test_load_failure_fails_before_rendering() -> None:
    """Stop in the failed state when the engine cannot load."""
    engine = RecordingEngine(fail_load=True)
    pipeline = make_pipeline(engine)

    result = pipeline.run(Project(slides=(make_slide("a"),)))

    assert result.state == PipelineState.FAILED
    assert result.error is not None
    assert result.error.code == "slide_video.engine.init_failed"
    assert result.log[0] == "Loading ffmpeg ..."
    assert result.log[-1].startswith("Error: ")
    assert engine.staged == []


def test_empty_project_never_loads_engine() -> None:
    """Reject an empty slide list before touching the engine."""
    engine = RecordingEngine()
    pipeline = make_pipeline(engine)

    result = pipeline.run(Project(slides=()))

    assert result.state == PipelineState.FAILED
    assert isinstance(result.error, InvalidProjectError)
    assert result.error.code == "slide_video.input.empty_project"
    assert engine.load_calls == 0


def test_cancel_during_staging_discards_frames() -> None:
    """Stop at the next frame boundary and clean the staging area."""
    engine = RecordingEngine()
    pipeline = make_pipeline(engine)

    def cancel_after_three(count: int) -> None:
        if count == 3:
            pipeline.cancel()

    engine.on_write = cancel_after_three

    result = pipeline.run(Project(slides=(make_slide("a"),), fps=10))

    assert result.state == PipelineState.FAILED
    assert result.error is not None
    assert result.error.code == "slide_video.pipeline.cancelled"
    assert len(engine.staged) == 3
    assert engine.files == {}
    assert engine.runs == []


def test_cancel_flag_resets_between_runs() -> None:
    """Start each run with a cleared cancellation request."""
    engine = RecordingEngine()
    pipeline = make_pipeline(engine)
    pipeline.cancel()

    result = pipeline.run(Project(slides=(make_slide("a"),), fps=5))

    assert result.succeeded


def test_encode_failure_keeps_log_and_discards() -> None:
    """Surface the engine diagnostic and drop staged frames."""
    engine = RecordingEngine(fail_run=True)
    pipeline = make_pipeline(engine)

    result = pipeline.run(Project(slides=(make_slide("a"),), fps=4))

    assert result.state == PipelineState.FAILED
    assert result.error is not None
    assert result.error.code == "slide_video.encode.process_failed"
    assert "Encoding ..." in result.log
    assert "exit code 1" in result.log[-1]
    assert engine.files == {}


def test_second_run_reuses_loaded_engine() -> None:
    """Load the engine once across runs."""
    engine = RecordingEngine()
    pipeline = make_pipeline(engine)
    project = Project(slides=(make_slide("a"),), fps=2)

    first = pipeline.run(project)
    second = pipeline.run(project)

    assert first.succeeded and second.succeeded
    assert engine.load_calls == 1
    assert "Loading ffmpeg ..." in first.log
    assert "Loading ffmpeg ..." not in second.log
    assert "ffmpeg ready." not in second.log
    assert second.log[0] == "Rendering 2 frames ..."
    assert [name for name, _ in engine.staged] == [
        "frame_00000.png",
        "frame_00001.png",
        "frame_00000.png",
        "frame_00001.png",
    ]


def test_parallel_rendering_preserves_order() -> None:
    """Stage frames in sequence order with several render workers."""
    engine = RecordingEngine()
    pipeline = make_pipeline(engine, render_workers=4)
    slides = tuple(make_slide(f"slide-{index}", 0.5) for index in range(5))

    result = pipeline.run(Project(slides=slides, fps=10))

    assert result.succeeded
    assert [data for _, data in engine.staged] == [
        f"slide-{index}".encode() for index in range(5) for _ in range(5)
    ]
    assert [name for name, _ in engine.staged] == [
        f"frame_{index:05d}.png" for index in range(25)
    ]


def test_reentrant_run_reports_busy() -> None:
    """Refuse a second run while one is in flight."""
    engine = RecordingEngine()
    nested: list[str] = []
    pipeline = make_pipeline(engine)
    project = Project(slides=(make_slide("a"),), fps=2)

    def start_nested(message: str) -> None:
        if message == "Encoding ...":
            nested_result = pipeline.run(project)
            assert nested_result.error is not None
            nested.append(nested_result.error.code)

    pipeline.on_progress = start_nested

    result = pipeline.run(project)

    assert result.succeeded
    assert nested == ["slide_video.pipeline.busy"]


class FailingRasterizer(TextRasterizer):
    """Rasterizer whose image encoding fails with a library error."""

    def render(self, slide: Slide, layout: LayoutResult | None = None) -> bytes:
        raise OSError("png encoder failed")


def test_unexpected_render_error_fails_the_run() -> None:
    """Return a failed result for errors outside the error hierarchy."""
    engine = RecordingEngine()
    pipeline = SlideVideoPipeline(
        EncoderAdapter(lambda: engine), rasterizer_factory=FailingRasterizer
    )

    result = pipeline.run(Project(slides=(make_slide("a"),), fps=2))

    assert result.state == PipelineState.FAILED
    assert pipeline.state == PipelineState.FAILED
    assert result.error is not None
    assert result.error.code == "slide_video.pipeline.unexpected_error"
    assert result.log[-1] == "Error: OSError: png encoder failed"
    assert engine.staged == []


def test_progress_callback_error_fails_the_run() -> None:
    """Contain exceptions raised by the progress callback."""
    engine = RecordingEngine()

    def explode(message: str) -> None:
        raise RuntimeError(f"listener broke on {message}")

    pipeline = make_pipeline(engine, on_progress=explode)

    result = pipeline.run(Project(slides=(make_slide("a"),), fps=2))

    assert result.state == PipelineState.FAILED
    assert result.error is not None
    assert result.error.code == "slide_video.pipeline.unexpected_error"
    assert result.log[-1].startswith("Error: RuntimeError: listener broke")


def test_huge_duration_is_an_invalid_project() -> None:
    """Reject durations whose frame count overflows."""
    engine = RecordingEngine()
    pipeline = make_pipeline(engine)

    result = pipeline.run(Project(slides=(make_slide("a", 1e308),), fps=30))

    assert result.state == PipelineState.FAILED
    assert isinstance(result.error, InvalidProjectError)
    assert result.error.code == "slide_video.input.too_many_frames"
    assert engine.load_calls == 0


def test_render_workers_must_be_positive() -> None:
    """Reject a non-positive worker count."""
    with pytest.raises(ValueError):
        make_pipeline(RecordingEngine(), render_workers=0)

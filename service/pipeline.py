"""Run orchestration: layout, rasterization, staging and encoding."""

from __future__ import annotations

from collections import deque
from concurrent import futures
from dataclasses import dataclass
from enum import Enum
import logging
import threading
from typing import Callable, Iterator, Tuple

from domain.slide_video import (
    EMPTY_PROJECT_CODE,
    PIPELINE_BUSY_CODE,
    PIPELINE_CANCELLED_CODE,
    PIPELINE_UNEXPECTED_CODE,
    WEBM_MIME_TYPE,
    EncodedVideo,
    Frame,
    InvalidProjectError,
    PipelineBusyError,
    PipelineCancelledError,
    Project,
    SlideVideoError,
)
from service.encoder import DEFAULT_OUTPUT_NAME, EncoderAdapter
from service.frame_raster import SlideRasterizer
from service.frame_sequence import FrameSequence, Rasterizer

LOGGER = logging.getLogger("slide_video.pipeline")


class PipelineState(str, Enum):
    """Lifecycle states of a pipeline run."""

    IDLE = "idle"
    PREPARING = "preparing"
    RENDERING = "rendering"
    INGESTING = "ingesting"
    ENCODING = "encoding"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class PipelineResult:
    """Terminal outcome of a run with its progress log."""

    state: PipelineState
    log: Tuple[str, ...]
    video: EncodedVideo | None = None
    error: SlideVideoError | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.DONE


RasterizerFactory = Callable[[int, int], Rasterizer]


class SlideVideoPipeline:
    """Sequence rendering and encoding for one project at a time."""

    def __init__(
        self,
        encoder: EncoderAdapter,
        rasterizer_factory: RasterizerFactory | None = None,
        render_workers: int = 1,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        if render_workers <= 0:
            raise ValueError("render_workers must be positive")
        self.encoder = encoder
        self.rasterizer_factory = rasterizer_factory or SlideRasterizer
        self.render_workers = render_workers
        self.on_progress = on_progress
        self.state = PipelineState.IDLE
        self.log: list[str] = []
        self._cancel_event = threading.Event()
        self._run_lock = threading.Lock()

    def cancel(self) -> None:
        """Request the in-flight run to stop at the next frame boundary."""
        self._cancel_event.set()

    def report(self, message: str) -> None:
        self.log.append(message)
        LOGGER.info("slide_video.progress: %s", message)
        if self.on_progress is not None:
            self.on_progress(message)

    def transition(self, state: PipelineState) -> None:
        LOGGER.debug("slide_video.state: %s -> %s", self.state.value, state.value)
        self.state = state

    def check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise PipelineCancelledError(PIPELINE_CANCELLED_CODE, "run cancelled")

    def run(self, project: Project) -> PipelineResult:
        """Render and encode a project, returning a terminal result."""
        if not self._run_lock.acquire(blocking=False):
            error = PipelineBusyError(PIPELINE_BUSY_CODE, "a run is already in progress")
            return PipelineResult(
                state=PipelineState.FAILED,
                log=(f"Error: {error}",),
                error=error,
            )
        try:
            self.log = []
            self._cancel_event.clear()
            self.transition(PipelineState.IDLE)
            try:
                video = self.execute(project)
            except SlideVideoError as exc:
                return self.fail(exc)
            except Exception as exc:
                error = SlideVideoError(
                    PIPELINE_UNEXPECTED_CODE, f"{type(exc).__name__}: {exc}"
                )
                error.__cause__ = exc
                return self.fail(error)
            finally:
                self.encoder.discard()
            self.transition(PipelineState.DONE)
            return PipelineResult(
                state=PipelineState.DONE, log=tuple(self.log), video=video
            )
        finally:
            self._run_lock.release()

    def fail(self, error: SlideVideoError) -> PipelineResult:
        """Record a terminal error and build the failed result."""
        LOGGER.error("%s: %s", error.code, str(error).strip())
        message = f"Error: {error}"
        self.log.append(message)
        if self.on_progress is not None:
            try:
                self.on_progress(message)
            except Exception as exc:
                LOGGER.warning(
                    "%s: progress callback failed (%s)", PIPELINE_UNEXPECTED_CODE, exc
                )
        self.transition(PipelineState.FAILED)
        return PipelineResult(
            state=PipelineState.FAILED, log=tuple(self.log), error=error
        )

    def execute(self, project: Project) -> EncodedVideo:
        if not project.slides:
            raise InvalidProjectError(EMPTY_PROJECT_CODE, "project has no slides")
        sequence = FrameSequence(
            project, self.rasterizer_factory(project.width, project.height)
        )

        self.transition(PipelineState.PREPARING)
        if not self.encoder.is_ready():
            self.report("Loading ffmpeg ...")
            self.encoder.ensure_ready()
            self.report("ffmpeg ready.")
        # staging from an earlier aborted run must not leak into this one
        self.encoder.discard()

        self.transition(PipelineState.RENDERING)
        self.report(f"Rendering {len(sequence)} frames ...")
        frames = deque(self.render_frames(sequence))

        self.transition(PipelineState.INGESTING)
        self.report(f"Staging {len(frames)} frames ...")
        while frames:
            self.check_cancelled()
            self.encoder.ingest(frames.popleft())

        self.check_cancelled()
        self.transition(PipelineState.ENCODING)
        self.report("Encoding ...")
        data = self.encoder.encode(project.fps, DEFAULT_OUTPUT_NAME)
        self.report("Done.")
        return EncodedVideo(data=data, mime_type=WEBM_MIME_TYPE)

    def render_frames(self, sequence: FrameSequence) -> Iterator[Frame]:
        """Yield rendered frames in order, optionally rendering in a pool."""
        sequence.prepare_layouts()
        if self.render_workers == 1:
            for slot in sequence.slots():
                self.check_cancelled()
                yield sequence.render(slot)
            return

        executor = futures.ThreadPoolExecutor(max_workers=self.render_workers)
        try:
            for frame in executor.map(sequence.render, sequence.slots()):
                self.check_cancelled()
                yield frame
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

"""Encoder engine contract, ffmpeg engine and staging adapter."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from typing import Callable, Protocol, Sequence, Tuple

from domain.slide_video import (
    ENCODE_INCONSISTENT_CODE,
    ENCODE_INGEST_CODE,
    ENCODE_NO_FRAMES_CODE,
    ENCODE_NOT_READY_CODE,
    ENCODE_ORDER_CODE,
    ENCODE_OUTPUT_CODE,
    ENCODE_PROCESS_CODE,
    ENGINE_INIT_CODE,
    ENGINE_NOT_FOUND_CODE,
    ENGINE_UNSUPPORTED_CODE,
    EncodeError,
    EngineInitError,
    Frame,
)
from service.frame_sequence import FRAME_NAME_PATTERN, frame_file_name

LOGGER = logging.getLogger("slide_video.encoder")

VIDEO_CODEC = "libvpx"
VIDEO_PIXEL_FORMAT = "yuv420p"
VIDEO_BITRATE = "1M"
DEFAULT_OUTPUT_NAME = "out.webm"
STDERR_TAIL_CHARS = 2000
STAGING_PREFIX = "slide_video_"


class EngineRunError(RuntimeError):
    """Engine invocation failure with the engine's diagnostic output."""

    def __init__(self, message: str, diagnostic: str = "") -> None:
        super().__init__(message)
        self.diagnostic = diagnostic


class EncoderEngine(Protocol):
    """Video encoding engine with a private file staging area."""

    def ready(self) -> bool: ...

    def load(self) -> None: ...

    def write_file(self, name: str, data: bytes) -> None: ...

    def read_file(self, name: str) -> bytes: ...

    def remove_file(self, name: str) -> None: ...

    def run(self, args: Sequence[str]) -> None: ...

    def close(self) -> None: ...


def build_encoder_args(fps: int, output_name: str) -> Tuple[str, ...]:
    """Build the fixed encoder argument list."""
    return (
        "-framerate",
        str(fps),
        "-i",
        FRAME_NAME_PATTERN,
        "-c:v",
        VIDEO_CODEC,
        "-pix_fmt",
        VIDEO_PIXEL_FORMAT,
        "-b:v",
        VIDEO_BITRATE,
        output_name,
    )


def stderr_tail(stderr_value: bytes | str | None) -> str:
    """Decode and trim engine diagnostics."""
    if not stderr_value:
        return ""
    if isinstance(stderr_value, bytes):
        stderr_value = stderr_value.decode("utf-8", errors="replace")
    return stderr_value.strip()[-STDERR_TAIL_CHARS:]


class FfmpegEngine:
    """Engine backed by the ffmpeg binary and a temporary staging directory."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        staging_root: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.staging_root = staging_root
        self.timeout_seconds = timeout_seconds
        self.executable: str | None = None
        self.staging_dir: str | None = None

    def ready(self) -> bool:
        return self.executable is not None and self.staging_dir is not None

    def load(self) -> None:
        """Locate ffmpeg, check the VP8 encoder and create the staging area."""
        executable = shutil.which(self.ffmpeg_path)
        if not executable:
            raise EngineInitError(
                ENGINE_NOT_FOUND_CODE, f"{self.ffmpeg_path} not on PATH"
            )
        try:
            version_result = subprocess.run(
                [executable, "-version"],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                check=True,
            )
            encoders_result = subprocess.run(
                [executable, "-hide_banner", "-encoders"],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                check=True,
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            raise EngineInitError(
                ENGINE_INIT_CODE, "ffmpeg exists but could not be executed"
            ) from exc

        if "ffmpeg version" not in version_result.stdout.lower():
            raise EngineInitError(
                ENGINE_INIT_CODE, "ffmpeg version output is unexpected"
            )
        if VIDEO_CODEC not in encoders_result.stdout:
            raise EngineInitError(
                ENGINE_UNSUPPORTED_CODE, f"ffmpeg does not support {VIDEO_CODEC} encoder"
            )

        try:
            self.staging_dir = tempfile.mkdtemp(
                prefix=STAGING_PREFIX, dir=self.staging_root
            )
        except OSError as exc:
            raise EngineInitError(
                ENGINE_INIT_CODE, f"cannot create staging directory: {exc}"
            ) from exc
        self.executable = executable
        LOGGER.debug("slide_video.engine.loaded: %s staging=%s", executable, self.staging_dir)

    def staged_path(self, name: str) -> str:
        if self.staging_dir is None:
            raise RuntimeError("engine is not loaded")
        if os.path.basename(name) != name or name in ("", ".", ".."):
            raise ValueError(f"invalid staged file name: {name!r}")
        return os.path.join(self.staging_dir, name)

    def write_file(self, name: str, data: bytes) -> None:
        with open(self.staged_path(name), "wb") as file_handle:
            file_handle.write(data)

    def read_file(self, name: str) -> bytes:
        with open(self.staged_path(name), "rb") as file_handle:
            return file_handle.read()

    def remove_file(self, name: str) -> None:
        os.remove(self.staged_path(name))

    def run(self, args: Sequence[str]) -> None:
        """Run ffmpeg inside the staging directory."""
        if self.executable is None or self.staging_dir is None:
            raise RuntimeError("engine is not loaded")
        command = [self.executable, "-hide_banner", "-nostdin", "-y", *args]
        LOGGER.debug("slide_video.engine.command: %s", " ".join(command))
        try:
            result = subprocess.run(
                command,
                cwd=self.staging_dir,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise EngineRunError(
                f"ffmpeg timed out after {self.timeout_seconds} seconds",
                stderr_tail(exc.stderr),
            ) from exc
        if result.returncode != 0:
            diagnostic = stderr_tail(result.stderr)
            raise EngineRunError(
                f"ffmpeg failed with exit code {result.returncode}. {diagnostic}",
                diagnostic,
            )

    def close(self) -> None:
        if self.staging_dir is not None:
            shutil.rmtree(self.staging_dir, ignore_errors=True)
        self.staging_dir = None
        self.executable = None


class EncoderAdapter:
    """Owns one engine instance and its staged frames for sequential runs."""

    def __init__(self, engine_factory: Callable[[], EncoderEngine]) -> None:
        self.engine_factory = engine_factory
        self.engine: EncoderEngine | None = None
        self.staged_names: list[str] = []
        self.output_name: str | None = None
        self.inconsistent = False

    def __enter__(self) -> "EncoderAdapter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def staged_count(self) -> int:
        return len(self.staged_names)

    def is_ready(self) -> bool:
        return self.engine is not None and self.engine.ready()

    def ensure_ready(self) -> None:
        """Build and load the engine on first use; no-op afterwards."""
        if self.engine is None:
            try:
                self.engine = self.engine_factory()
            except EngineInitError:
                raise
            except Exception as exc:
                raise EngineInitError(
                    ENGINE_INIT_CODE, f"failed to construct encoder engine: {exc}"
                ) from exc
        if self.engine.ready():
            return
        try:
            self.engine.load()
        except EngineInitError:
            raise
        except Exception as exc:
            raise EngineInitError(
                ENGINE_INIT_CODE, f"failed to load encoder engine: {exc}"
            ) from exc

    def require_engine(self) -> EncoderEngine:
        if self.engine is None or not self.engine.ready():
            raise EncodeError(ENCODE_NOT_READY_CODE, "encoder engine is not loaded")
        return self.engine

    def ingest(self, frame: Frame) -> None:
        """Stage one frame under its zero-padded sequence name."""
        engine = self.require_engine()
        if self.inconsistent:
            raise EncodeError(
                ENCODE_INCONSISTENT_CODE, "staging is inconsistent; discard and re-stage"
            )
        expected_index = len(self.staged_names)
        if frame.sequence_index != expected_index:
            raise EncodeError(
                ENCODE_ORDER_CODE,
                f"expected frame {expected_index}, got {frame.sequence_index}",
            )
        name = frame_file_name(frame.sequence_index)
        try:
            engine.write_file(name, frame.image_bytes)
        except Exception as exc:
            self.inconsistent = True
            # partial writes are removed by discard()
            self.staged_names.append(name)
            raise EncodeError(
                ENCODE_INGEST_CODE, f"failed to stage {name}: {exc}", str(exc)
            ) from exc
        self.staged_names.append(name)

    def encode(self, fps: int, output_name: str = DEFAULT_OUTPUT_NAME) -> bytes:
        """Encode staged frames, read the output back and clean up."""
        engine = self.require_engine()
        if self.inconsistent:
            raise EncodeError(
                ENCODE_INCONSISTENT_CODE, "staging is inconsistent; discard and re-stage"
            )
        if not self.staged_names:
            raise EncodeError(ENCODE_NO_FRAMES_CODE, "no frames staged for encoding")

        self.output_name = output_name
        try:
            try:
                engine.run(build_encoder_args(fps, output_name))
            except EngineRunError as exc:
                raise EncodeError(ENCODE_PROCESS_CODE, str(exc), exc.diagnostic) from exc
            except Exception as exc:
                raise EncodeError(ENCODE_PROCESS_CODE, str(exc), str(exc)) from exc
            try:
                data = engine.read_file(output_name)
            except Exception as exc:
                raise EncodeError(
                    ENCODE_OUTPUT_CODE, f"failed to read {output_name}: {exc}", str(exc)
                ) from exc
            if not data:
                raise EncodeError(ENCODE_OUTPUT_CODE, f"{output_name} is empty")
            return data
        finally:
            self.discard()

    def discard(self) -> None:
        """Remove staged frames and output, ignoring removal failures."""
        engine = self.engine
        names = list(self.staged_names)
        if self.output_name is not None:
            names.append(self.output_name)
        if engine is not None and engine.ready():
            for name in names:
                try:
                    engine.remove_file(name)
                except Exception as exc:
                    LOGGER.debug("slide_video.encode.cleanup: %s (%s)", name, exc)
        self.staged_names = []
        self.output_name = None
        self.inconsistent = False

    def close(self) -> None:
        """Drain staging and release the engine."""
        self.discard()
        if self.engine is not None:
            self.engine.close()
            self.engine = None

#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1"
# ]
# ///
"""Render text slides into a WebM video."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from domain.slide_video import (
    INPUT_FILE_CODE,
    InvalidProjectError,
    Project,
    SlideVideoError,
    default_project,
    parse_project,
)
from service.encoder import EncoderAdapter, FfmpegEngine
from service.frame_raster import FontResolver, SlideRasterizer
from service.pipeline import SlideVideoPipeline

LOGGER = logging.getLogger("slide_video")

DEFAULT_OUTPUT_VIDEO_FILE = "video.webm"
DEFAULT_FFMPEG_PATH = "ffmpeg"
DEFAULT_RENDER_WORKERS = 1

FFMPEG_PATH_ENV = "SLIDE_VIDEO_FFMPEG_PATH"
FONTS_DIR_ENV = "SLIDE_VIDEO_FONTS_DIR"
STAGING_DIR_ENV = "SLIDE_VIDEO_STAGING_DIR"
RENDER_WORKERS_ENV = "SLIDE_VIDEO_RENDER_WORKERS"
ENCODE_TIMEOUT_ENV = "SLIDE_VIDEO_ENCODE_TIMEOUT_SECONDS"
LOG_LEVEL_ENV = "SLIDE_VIDEO_LOG_LEVEL"

CONFIG_CODE = "slide_video.config.invalid"
OUTPUT_FILE_CODE = "slide_video.output.write_failed"


@dataclasses.dataclass(frozen=True)
class SlideVideoConfig:
    """Runtime configuration for the CLI."""

    project_file: str | None
    output_video_file: str
    ffmpeg_path: str
    fonts_dir: str | None
    staging_dir: str | None
    render_workers: int
    encode_timeout_seconds: float | None

    def __post_init__(self) -> None:
        if self.project_file is not None and not self.project_file.strip():
            raise ValueError("project-file must be non-empty")
        if not self.output_video_file.lower().endswith(".webm"):
            raise ValueError("output-video-file must end with .webm")
        if not self.ffmpeg_path.strip():
            raise ValueError("ffmpeg-path must be non-empty")
        if self.render_workers <= 0:
            raise ValueError("render-workers must be positive")
        if self.encode_timeout_seconds is not None and self.encode_timeout_seconds <= 0:
            raise ValueError("encode-timeout-seconds must be positive")


def parse_positive_int(raw_value: str, label: str) -> int:
    """Parse a positive integer from a string."""
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise ValueError(f"{label} must be an integer") from exc
    if value <= 0:
        raise ValueError(f"{label} must be positive")
    return value


def parse_positive_float(raw_value: str, label: str) -> float:
    """Parse a positive float from a string."""
    try:
        value = float(raw_value)
    except ValueError as exc:
        raise ValueError(f"{label} must be a number") from exc
    if value <= 0:
        raise ValueError(f"{label} must be positive")
    return value


def read_env_text(env: dict[str, str], key: str) -> str | None:
    """Read an optional non-blank string from the environment."""
    raw_value = env.get(key, "").strip()
    return raw_value or None


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(prog="slide_video.py", add_help=True)
    parser.add_argument(
        "--project-file",
        default=None,
        help="JSON project file; the demo project is used when omitted",
    )
    parser.add_argument("--output-video-file", default=DEFAULT_OUTPUT_VIDEO_FILE)
    parser.add_argument("--ffmpeg-path", default=None)
    parser.add_argument("--fonts-dir", default=None)
    parser.add_argument("--staging-dir", default=None)
    parser.add_argument("--render-workers", type=int, default=None)
    parser.add_argument("--encode-timeout-seconds", type=float, default=None)
    return parser.parse_args(list(argv))


def configure_logging(env: dict[str, str]) -> None:
    """Configure logging from environment."""
    level_name = env.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.INFO
    if level_name == "DEBUG":
        level = logging.DEBUG
    elif level_name == "WARNING":
        level = logging.WARNING
    elif level_name == "ERROR":
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(message)s")


def load_config(args: argparse.Namespace, env: dict[str, str]) -> SlideVideoConfig:
    """Load configuration from args and environment."""
    ffmpeg_path = env.get(FFMPEG_PATH_ENV, DEFAULT_FFMPEG_PATH)
    if args.ffmpeg_path is not None:
        ffmpeg_path = args.ffmpeg_path
    fonts_dir = read_env_text(env, FONTS_DIR_ENV)
    if args.fonts_dir is not None:
        fonts_dir = args.fonts_dir
    staging_dir = read_env_text(env, STAGING_DIR_ENV)
    if args.staging_dir is not None:
        staging_dir = args.staging_dir
    render_workers = DEFAULT_RENDER_WORKERS
    raw_workers = env.get(RENDER_WORKERS_ENV, "").strip()
    if raw_workers:
        render_workers = parse_positive_int(raw_workers, "render-workers")
    if args.render_workers is not None:
        render_workers = args.render_workers
    encode_timeout: float | None = None
    raw_timeout = env.get(ENCODE_TIMEOUT_ENV, "").strip()
    if raw_timeout:
        encode_timeout = parse_positive_float(raw_timeout, "encode-timeout-seconds")
    if args.encode_timeout_seconds is not None:
        encode_timeout = args.encode_timeout_seconds
    return SlideVideoConfig(
        project_file=args.project_file,
        output_video_file=str(args.output_video_file),
        ffmpeg_path=str(ffmpeg_path),
        fonts_dir=fonts_dir,
        staging_dir=staging_dir,
        render_workers=int(render_workers),
        encode_timeout_seconds=encode_timeout,
    )


def read_project_file(file_path: str) -> Project:
    """Read and parse a UTF-8 JSON project file."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise InvalidProjectError(
            INPUT_FILE_CODE, f"project file not found: {file_path}"
        ) from exc
    except OSError as exc:
        raise InvalidProjectError(
            INPUT_FILE_CODE, f"cannot read project file {file_path}: {exc.strerror}"
        ) from exc
    try:
        payload = json.loads(file_bytes.decode("utf-8", errors="strict"))
    except UnicodeDecodeError as exc:
        raise InvalidProjectError(
            INPUT_FILE_CODE,
            f"project file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc
    except json.JSONDecodeError as exc:
        raise InvalidProjectError(
            INPUT_FILE_CODE, f"project file is not valid JSON: {exc.msg}"
        ) from exc
    return parse_project(payload)


def build_pipeline(config: SlideVideoConfig, encoder: EncoderAdapter) -> SlideVideoPipeline:
    """Wire the pipeline for a configuration."""
    fonts = FontResolver(config.fonts_dir)

    def rasterizer_factory(width: int, height: int) -> SlideRasterizer:
        return SlideRasterizer(width, height, fonts)

    return SlideVideoPipeline(
        encoder,
        rasterizer_factory=rasterizer_factory,
        render_workers=config.render_workers,
    )


def build_encoder(config: SlideVideoConfig) -> EncoderAdapter:
    """Create the encoder adapter for a configuration."""
    return EncoderAdapter(
        lambda: FfmpegEngine(
            ffmpeg_path=config.ffmpeg_path,
            staging_root=config.staging_dir,
            timeout_seconds=config.encode_timeout_seconds,
        )
    )


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""
    env = dict(os.environ)
    configure_logging(env)
    try:
        args = parse_args(list(argv) if argv is not None else sys.argv[1:])
        config = load_config(args, env)
    except ValueError as exc:
        LOGGER.error("%s: %s", CONFIG_CODE, exc)
        return 1

    try:
        if config.project_file is None:
            project = default_project()
        else:
            project = read_project_file(config.project_file)
    except SlideVideoError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1

    with build_encoder(config) as encoder:
        result = build_pipeline(config, encoder).run(project)

    if result.error is not None or result.video is None:
        return 1

    try:
        output_path = Path(config.output_video_file)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(result.video.data)
    except OSError as exc:
        LOGGER.error("%s: %s", OUTPUT_FILE_CODE, exc)
        return 1
    LOGGER.info(
        "slide_video.output: wrote %s (%s, %d bytes)",
        config.output_video_file,
        result.video.mime_type,
        len(result.video.data),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

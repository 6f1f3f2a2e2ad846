"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Mapping, Sequence

DEFAULT_BINARY = "ffmpeg"
DEFAULT_LOGLEVEL = "error"


def _base_args(binary: str, loglevel: str) -> list[str]:
    return [binary or DEFAULT_BINARY, "-hide_banner", "-nostats", "-loglevel", loglevel or DEFAULT_LOGLEVEL]


def _screen_input_args(video_cfg: Mapping[str, Any], platform: str) -> list[str]:
    """Return the grabber input arguments for the current desktop.

    ffmpeg treats options appearing before ``-i`` as applying to that input, so
    frame rate, size and offsets all precede the input specifier here.
    """

    framerate = str(video_cfg.get("framerate", 60))
    size = str(video_cfg.get("video_size") or "")
    offset_x = int(video_cfg.get("offset_x", 0) or 0)
    offset_y = int(video_cfg.get("offset_y", 0) or 0)
    input_format = str(video_cfg.get("input_format") or "")
    source = str(video_cfg.get("input") or "")

    if platform.startswith("win"):
        args = ["-f", input_format or "gdigrab", "-framerate", framerate]
        if size:
            args += ["-video_size", size]
        args += ["-offset_x", str(offset_x), "-offset_y", str(offset_y)]
        rtbufsize = video_cfg.get("rtbufsize")
        if rtbufsize:
            args += ["-rtbufsize", str(rtbufsize)]
        return args + ["-i", source or "desktop"]

    if platform == "darwin":
        args = ["-f", input_format or "avfoundation", "-framerate", framerate, "-capture_cursor", "1"]
        return args + ["-i", source or "1:none"]

    display = source or f"{os.environ.get('DISPLAY', ':0.0')}+{offset_x},{offset_y}"
    args = ["-f", input_format or "x11grab", "-framerate", framerate]
    if size:
        args += ["-video_size", size]
    return args + ["-i", display]


def screen_capture_args(
    video_cfg: Mapping[str, Any],
    output: str | os.PathLike[str],
    *,
    binary: str = DEFAULT_BINARY,
    loglevel: str = DEFAULT_LOGLEVEL,
    platform: str | None = None,
) -> list[str]:
    """Build the long-running desktop capture + encode command."""

    cmd = _base_args(binary, loglevel)
    cmd += _screen_input_args(video_cfg, platform or sys.platform)
    cmd += [
        "-c:v",
        str(video_cfg.get("codec") or "libx264"),
    ]
    preset = video_cfg.get("preset")
    if preset:
        cmd += ["-preset", str(preset)]
    cmd += [
        "-pix_fmt",
        str(video_cfg.get("pix_fmt") or "yuv420p"),
        "-fps_mode",
        "cfr",
    ]
    extra: Sequence[Any] = video_cfg.get("extra_args") or []
    cmd += [str(item) for item in extra]
    cmd += ["-f", str(video_cfg.get("container") or "mp4"), "-y", str(output)]
    return cmd


def merge_args(
    video_path: str | os.PathLike[str],
    audio_path: str | os.PathLike[str],
    output: str | os.PathLike[str],
    *,
    binary: str = DEFAULT_BINARY,
    loglevel: str = DEFAULT_LOGLEVEL,
) -> list[str]:
    """Mux video (stream copy) with the WAV track re-encoded to AAC."""

    return _base_args(binary, loglevel) + [
        "-i",
        str(video_path),
        "-i",
        str(audio_path),
        "-c:v",
        "copy",
        "-c:a",
        "aac",
        "-shortest",
        "-y",
        str(output),
    ]


def format_seconds(value: float) -> str:
    return f"{max(0.0, float(value)):.3f}"


def clip_args(
    source: str | os.PathLike[str],
    start: float,
    end: float,
    output: str | os.PathLike[str],
    *,
    binary: str = DEFAULT_BINARY,
    loglevel: str = DEFAULT_LOGLEVEL,
) -> list[str]:
    """Stream-copy the ``[start, end]`` interval (seconds) of ``source``."""

    return _base_args(binary, loglevel) + [
        "-i",
        str(source),
        "-ss",
        format_seconds(start),
        "-to",
        format_seconds(end),
        "-c:v",
        "copy",
        "-c:a",
        "copy",
        "-y",
        str(output),
    ]


def artifact_path(directory: Path, prefix: str, session_id: str, extension: str) -> Path:
    """``<dir>/<prefix>_<id>.<ext>``; every session artifact shares the id."""

    return Path(directory) / f"{prefix}_{session_id}.{extension.lstrip('.')}"

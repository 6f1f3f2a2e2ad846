#!/usr/bin/env python3
"""
VideoCaptureAdapter: one ffmpeg desktop-capture process per session.

- start() spawns the encoder and returns immediately
- stop() sends the quit token, waits out the grace period, then kills
- elapsed_text() feeds the console status line
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Mapping, Optional

from clipwatch.encoder import DEFAULT_STOP_GRACE_SEC, FFmpegEncoder
from clipwatch.ffmpeg_io import artifact_path, screen_capture_args
from clipwatch.session import AlreadyRecording

NOT_RECORDING_TEXT = "Not recording"


class CaptureStartFailed(RuntimeError):
    """Raised when a capture producer cannot be started."""


def format_elapsed(seconds: float | None) -> str:
    if seconds is None:
        return NOT_RECORDING_TEXT
    total = int(max(0.0, seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class VideoCaptureAdapter:
    def __init__(
        self,
        video_cfg: Mapping[str, Any] | None = None,
        *,
        encoder: Any = None,
        binary: str = "ffmpeg",
        loglevel: str = "error",
        stop_grace: float | None = None,
        log_level: int = logging.INFO,
    ):
        self.video_cfg = dict(video_cfg or {})
        self.encoder = encoder or FFmpegEncoder(log_level=log_level)
        self.binary = binary
        self.loglevel = loglevel
        grace = stop_grace if stop_grace is not None else self.video_cfg.get("stop_grace_sec")
        self.stop_grace = float(grace if grace is not None else DEFAULT_STOP_GRACE_SEC)

        self._log = logging.getLogger("video_capture")
        self._log.setLevel(log_level)

        self._lock = threading.Lock()
        self._proc: Any = None
        self._started_monotonic: Optional[float] = None
        self.video_path: Optional[Path] = None

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any], **kwargs: Any) -> "VideoCaptureAdapter":
        ffmpeg_cfg = cfg.get("ffmpeg", {})
        return cls(
            cfg.get("video"),
            binary=str(ffmpeg_cfg.get("binary") or "ffmpeg"),
            loglevel=str(ffmpeg_cfg.get("loglevel") or "error"),
            **kwargs,
        )

    @property
    def extension(self) -> str:
        return str(self.video_cfg.get("container") or "mp4")

    @property
    def is_recording(self) -> bool:
        with self._lock:
            return self._proc is not None

    def build_command(self, output: Path) -> list[str]:
        return screen_capture_args(self.video_cfg, output, binary=self.binary, loglevel=self.loglevel)

    def start(self, session_dir: Path, session_id: str) -> Path:
        with self._lock:
            if self._proc is not None:
                raise AlreadyRecording("video capture already running")
            output = artifact_path(session_dir, "video", session_id, self.extension)
            cmd = self.build_command(output)
            try:
                proc = self.encoder.start(cmd)
            except OSError as exc:
                self._log.error("Failed to start video capture: %r", exc)
                raise CaptureStartFailed(f"video encoder could not be spawned: {exc}") from exc
            self._proc = proc
            self._started_monotonic = time.monotonic()
            self.video_path = output
        self._log.info("Video capture started -> %s", output)
        return output

    def stop(self) -> Optional[int]:
        with self._lock:
            proc = self._proc
            self._proc = None
            self._started_monotonic = None
        if proc is None:
            self._log.info("No active video recording to stop (NotRecording)")
            return None
        self._log.info("Stopping video recording...")
        rc = self.encoder.stop(proc, grace=self.stop_grace)
        self._log.info("Video saved to: %s (rc=%s)", self.video_path, rc)
        return rc

    def elapsed(self) -> Optional[float]:
        with self._lock:
            started = self._started_monotonic
        if started is None:
            return None
        return time.monotonic() - started

    def elapsed_text(self) -> str:
        return format_elapsed(self.elapsed())

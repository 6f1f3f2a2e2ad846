#!/usr/bin/env python3
"""
Post-processing: mux the finalized audio + video, then cut clips.

Clip windows come from the detections buffered during the session:
- pairwise: consecutive detections bound each clip, offsets relative to the
  first detection (k detections -> k-1 clips)
- window: a fixed +/- window around every detection, offsets relative to the
  recording start (k detections -> k clips)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

from clipwatch.encoder import EncoderResult, FFmpegEncoder
from clipwatch.ffmpeg_io import artifact_path, clip_args, merge_args
from clipwatch.file_wait import FileFinalizationWaiter
from clipwatch.session import DetectionEvent

CLIP_MODE_PAIRWISE = "pairwise"
CLIP_MODE_WINDOW = "window"
DEFAULT_WINDOW_SEC = 5.0


class StageFailure(RuntimeError):
    """A merge or clip stage could not produce its output."""

    def __init__(self, stage: str, message: str, stderr: str = "") -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.stderr = stderr


@dataclass
class ClipResult:
    index: int
    start: float
    end: float
    path: Path
    result: Optional[EncoderResult]

    @property
    def success(self) -> bool:
        return self.result is not None and self.result.success and self.path.exists()


def clip_windows(detections: Sequence[DetectionEvent]) -> List[tuple[float, float]]:
    if len(detections) < 2:
        return []
    origin = detections[0].timestamp
    return [
        (detections[i].timestamp - origin, detections[i + 1].timestamp - origin)
        for i in range(len(detections) - 1)
    ]


def fixed_windows(
    detections: Sequence[DetectionEvent],
    started_at: float,
    window: float = DEFAULT_WINDOW_SEC,
) -> List[tuple[float, float]]:
    windows = []
    for event in detections:
        offset = event.timestamp - started_at
        windows.append((max(0.0, offset - window), max(0.0, offset + window)))
    return windows


def _missing(path: Optional[Path]) -> bool:
    return path is None or not Path(path).is_file() or Path(path).stat().st_size == 0


class PostProcessingPipeline:
    def __init__(
        self,
        *,
        encoder: Any = None,
        waiter: Optional[FileFinalizationWaiter] = None,
        binary: str = "ffmpeg",
        loglevel: str = "error",
        container: str = "mp4",
        clip_mode: str = CLIP_MODE_PAIRWISE,
        window_sec: float = DEFAULT_WINDOW_SEC,
        log_level: int = logging.INFO,
    ) -> None:
        self.encoder = encoder or FFmpegEncoder(log_level=log_level)
        self.waiter = waiter or FileFinalizationWaiter()
        self.binary = binary
        self.loglevel = loglevel
        self.container = container
        if clip_mode not in (CLIP_MODE_PAIRWISE, CLIP_MODE_WINDOW):
            raise ValueError(f"unknown clip mode {clip_mode!r}")
        self.clip_mode = clip_mode
        self.window_sec = float(window_sec)
        self._log = logging.getLogger("postprocess")
        self._log.setLevel(log_level)

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any], **kwargs: Any) -> "PostProcessingPipeline":
        ffmpeg_cfg = cfg.get("ffmpeg", {})
        clips_cfg = cfg.get("clips", {})
        kwargs.setdefault("waiter", FileFinalizationWaiter.from_config(cfg.get("finalize")))
        return cls(
            binary=str(ffmpeg_cfg.get("binary") or "ffmpeg"),
            loglevel=str(ffmpeg_cfg.get("loglevel") or "error"),
            container=str(cfg.get("video", {}).get("container") or "mp4"),
            clip_mode=str(clips_cfg.get("mode") or CLIP_MODE_PAIRWISE),
            window_sec=float(clips_cfg.get("window_sec", DEFAULT_WINDOW_SEC)),
            **kwargs,
        )

    def windows_for(
        self, detections: Sequence[DetectionEvent], started_at: Optional[float] = None
    ) -> List[tuple[float, float]]:
        if self.clip_mode == CLIP_MODE_WINDOW:
            origin = started_at if started_at is not None else (detections[0].timestamp if detections else 0.0)
            return fixed_windows(detections, origin, self.window_sec)
        return clip_windows(detections)

    def merge(self, video_path: Optional[Path], audio_path: Optional[Path], out_dir: Path, session_id: str) -> Path:
        if _missing(video_path):
            raise StageFailure("merge", f"video input missing: {video_path}")
        if _missing(audio_path):
            raise StageFailure("merge", f"audio input missing: {audio_path}")

        merged = artifact_path(out_dir, "merged", session_id, self.container)
        self._log.info("Merging video and audio -> %s", merged)
        result = self.encoder.run(
            merge_args(video_path, audio_path, merged, binary=self.binary, loglevel=self.loglevel)
        )
        if not result.success:
            raise StageFailure("merge", result.describe_failure(), result.stderr)
        if _missing(merged):
            raise StageFailure("merge", f"encoder reported success but {merged} is missing", result.stderr)
        self._log.info("Merged file saved to: %s", merged)
        return merged

    def create_clips(
        self,
        merged_path: Optional[Path],
        detections: Sequence[DetectionEvent],
        out_dir: Path,
        session_id: str,
        *,
        started_at: Optional[float] = None,
    ) -> List[ClipResult]:
        windows = self.windows_for(detections, started_at)
        if not windows:
            self._log.info("%d detection(s); no clips to create", len(detections))
            return []
        if _missing(merged_path):
            raise StageFailure("clip", f"merged file missing: {merged_path}")

        self._log.info("Creating %d clip(s) from %d detection(s)...", len(windows), len(detections))
        results: List[ClipResult] = []
        for index, (start, end) in enumerate(windows, start=1):
            clip_path = Path(out_dir) / f"clip_{session_id}_part{index}.{self.container}"
            self._log.info("Creating clip %d from %.2fs to %.2fs...", index, start, end)
            result = self.encoder.run(
                clip_args(merged_path, start, end, clip_path, binary=self.binary, loglevel=self.loglevel)
            )
            clip = ClipResult(index, start, end, clip_path, result)
            if clip.success:
                self._log.info("Clip %d saved to: %s", index, clip_path)
            else:
                self._log.error("Failed to create clip %d: %s", index, result.describe_failure())
            results.append(clip)
        return results

    def wait_for(self, path: Path) -> bool:
        outcome = self.waiter.wait_for_stable(path)
        return outcome.stable

#!/usr/bin/env python3
"""
SessionController: one recording session at a time.

Idle -> Recording            start()
Recording -> Stopping -> Merging -> Clipping -> Complete    stop()
any -> Failed                nothing usable could be produced
Complete/Failed -> Idle      implicit; the controller drops the session

stop() ordering matters: audio lands first (small buffers, fast), video gets
its quit token and grace period, the detector is joined before its buffer is
read, and nothing reads a file an external process wrote until the file has
stopped growing.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, List, Mapping, Optional

from clipwatch.audio_capture import AudioCaptureAdapter
from clipwatch.config import get_cfg, recordings_dir
from clipwatch.detector import VisualEventDetector
from clipwatch.file_wait import FileFinalizationWaiter
from clipwatch.postprocess import PostProcessingPipeline, StageFailure
from clipwatch.session import (
    AlreadyRecording,
    DetectionEvent,
    NotRecording,
    Session,
    SessionState,
    create_session,
    write_manifest,
)
from clipwatch.video_capture import (
    NOT_RECORDING_TEXT,
    CaptureStartFailed,
    VideoCaptureAdapter,
    format_elapsed,
)


def _has_content(path: Optional[Path]) -> bool:
    try:
        return path is not None and path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


class SessionController:
    def __init__(
        self,
        cfg: Optional[Mapping[str, Any]] = None,
        *,
        video: Any = None,
        audio: Any = None,
        detector: Any = None,
        pipeline: Any = None,
        waiter: Optional[FileFinalizationWaiter] = None,
        recordings_root: Optional[Path] = None,
    ) -> None:
        cfg = cfg if cfg is not None else get_cfg()
        dev_mode = bool(cfg.get("logging", {}).get("dev_mode", False))
        level = logging.DEBUG if dev_mode else logging.INFO

        self._log = logging.getLogger("controller")
        self._log.setLevel(level)

        self.recordings_root = Path(recordings_root) if recordings_root else recordings_dir(cfg)
        self.waiter = waiter or FileFinalizationWaiter.from_config(cfg.get("finalize"))
        self.video = video or VideoCaptureAdapter.from_config(cfg, log_level=level)
        self.audio = audio or AudioCaptureAdapter.from_config(cfg.get("audio"), log_level=level)
        self.detector = detector or VisualEventDetector.from_config(cfg, log_level=level)
        self.pipeline = pipeline or PostProcessingPipeline.from_config(cfg, waiter=self.waiter, log_level=level)

        self._lock = threading.Lock()
        self._session: Optional[Session] = None
        self.last_session: Optional[Session] = None

    @property
    def state(self) -> SessionState:
        with self._lock:
            session = self._session
        return session.state if session is not None else SessionState.IDLE

    @property
    def session(self) -> Optional[Session]:
        with self._lock:
            return self._session

    def elapsed_text(self) -> str:
        session = self.session
        if session is None or session.state is not SessionState.RECORDING:
            return NOT_RECORDING_TEXT
        if self.video.is_recording:
            return self.video.elapsed_text()
        return format_elapsed(time.time() - session.started_at)

    # --- Idle -> Recording ---
    def start(self) -> Session:
        with self._lock:
            if self._session is not None:
                raise AlreadyRecording(
                    f"session {self._session.id} is {self._session.state.value}; stop it first"
                )
            session = create_session(self.recordings_root)
            session.transition(SessionState.RECORDING)
            self._session = session

            self._log.info("Starting session %s in %s", session.id, session.directory)
            video_ok = self._start_video(session)
            audio_ok = self._start_audio(session)
            if not video_ok and not audio_ok:
                session.transition(SessionState.FAILED)
                self._write_manifest(session, [])
                self._session = None
                self.last_session = session
                raise CaptureStartFailed("neither video nor audio capture could be started")

            self._start_detector(session)
        return session

    def _start_detector(self, session: Session) -> bool:
        try:
            watching = self.detector.start_watching()
        except Exception as exc:  # noqa: BLE001 - detection is optional; capture keeps running
            self._log.exception("Detector failed to start for session %s", session.id)
            session.record_error(f"detector unavailable: {type(exc).__name__}: {exc}")
            return False
        if not watching:
            self._log.info("Session %s recording without icon detection", session.id)
        return watching

    def _start_video(self, session: Session) -> bool:
        try:
            session.video_path = self.video.start(session.directory, session.id)
        except CaptureStartFailed as exc:
            self._log.error("Video capture unavailable for session %s: %s", session.id, exc)
            session.record_error(str(exc))
            return False
        return True

    def _start_audio(self, session: Session) -> bool:
        if not self.audio.start(session.directory, session.id):
            self._log.warning("Session %s recording without audio", session.id)
            session.record_error("audio capture unavailable")
            return False
        session.audio_path = self.audio.audio_path
        return True

    # --- Recording -> ... -> Complete ---
    def stop(self) -> Session:
        with self._lock:
            session = self._session
            if session is None or session.state is not SessionState.RECORDING:
                raise NotRecording("no recording in progress")
            session.transition(SessionState.STOPPING)

        consumed: List[DetectionEvent] = []
        try:
            self._finish(session, consumed)
        except Exception as exc:  # noqa: BLE001 - the controller must survive any stage
            self._log.exception("Session %s post-processing failed", session.id)
            session.record_error(f"{type(exc).__name__}: {exc}")
            if not session.state.terminal:
                session.transition(SessionState.FAILED)
        finally:
            self._write_manifest(session, consumed)
            with self._lock:
                self._session = None
                self.last_session = session
        self._log.info("Session %s %s", session.id, session.state.value)
        return session

    def _finish(self, session: Session, consumed: List[DetectionEvent]) -> None:
        # 1. audio first so its file is stable before video teardown
        session.audio_path = self.audio.stop()

        # 2. video: quit token, grace period, force kill
        rc = self.video.stop()
        if rc not in (None, 0):
            self._log.warning("Video encoder exited rc=%s", rc)

        # 3. detector: signal and join
        self.detector.stop_watching()

        # 4. snapshot the detection buffer; the detector thread is gone
        consumed.extend(self.detector.drain())
        session.detections = list(consumed)
        self._log.info("Session %s buffered %d detection(s)", session.id, len(consumed))

        # 5. video must be finalized before anything reads it
        video_ready = False
        if session.video_path is not None:
            outcome = self.waiter.wait_for_stable(session.video_path)
            if outcome.timed_out:
                self._log.warning("Video file %s may not be fully flushed", session.video_path)
            video_ready = _has_content(session.video_path)
            if not video_ready:
                session.record_error(f"video file missing or empty: {session.video_path}")

        # 6. no audio: video-only session
        if not _has_content(session.audio_path):
            self._log.warning("Audio file is missing or invalid. Skipping merge and clip creation.")
            self._settle(session)
            return
        if not video_ready:
            self._log.warning("Video file unavailable. Skipping merge and clip creation.")
            self._settle(session)
            return

        # 7. merge, wait, clip
        session.transition(SessionState.MERGING)
        try:
            session.merged_path = self.pipeline.merge(
                session.video_path, session.audio_path, session.directory, session.id
            )
        except StageFailure as exc:
            self._log.error("Merge failed for session %s: %s", session.id, exc)
            session.record_error(str(exc))
            self._settle(session)
            return
        self.pipeline.wait_for(session.merged_path)

        session.transition(SessionState.CLIPPING)
        try:
            clips = self.pipeline.create_clips(
                session.merged_path,
                consumed,
                session.directory,
                session.id,
                started_at=session.started_at,
            )
        except StageFailure as exc:
            self._log.error("Clipping failed for session %s: %s", session.id, exc)
            session.record_error(str(exc))
            clips = []
        for clip in clips:
            if clip.success:
                session.clip_paths.append(clip.path)
            else:
                detail = clip.result.describe_failure() if clip.result is not None else "not attempted"
                session.record_error(f"clip {clip.index}: {detail}")
        session.detections.clear()

        # 8.
        self._settle(session)

    def _settle(self, session: Session) -> None:
        if session.artifacts():
            session.transition(SessionState.COMPLETE)
        else:
            session.transition(SessionState.FAILED)

    def _write_manifest(self, session: Session, consumed: List[DetectionEvent]) -> None:
        try:
            windows = self.pipeline.windows_for(consumed, session.started_at)
            write_manifest(session, detections=consumed, clip_windows=windows)
        except OSError as exc:
            self._log.warning("Could not write manifest for session %s: %r", session.id, exc)

    def shutdown(self) -> Optional[Session]:
        """Stop an active recording, if any; used on process exit."""
        try:
            return self.stop()
        except NotRecording:
            return None

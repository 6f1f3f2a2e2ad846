"""Recording session state shared by the controller and its producers."""

from __future__ import annotations

import enum
import json
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

SESSION_ID_FORMAT = "%Y%m%d_%H%M%S_%f"
MAX_ID_COLLISIONS = 1000


class SessionError(RuntimeError):
    """Base class for rejected session lifecycle requests."""


class AlreadyRecording(SessionError):
    pass


class NotRecording(SessionError):
    pass


class InvalidStateTransition(SessionError):
    pass


class SessionState(enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPING = "stopping"
    MERGING = "merging"
    CLIPPING = "clipping"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETE, SessionState.FAILED)


@dataclass(frozen=True)
class DetectionEvent:
    """One trigger-template match; ``timestamp`` is epoch seconds."""

    timestamp: float
    score: float | None = None
    template: str | None = None


@dataclass
class Session:
    id: str
    directory: Path
    started_at: float
    state: SessionState = SessionState.IDLE
    video_path: Path | None = None
    audio_path: Path | None = None
    merged_path: Path | None = None
    clip_paths: list[Path] = field(default_factory=list)
    detections: list[DetectionEvent] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    ended_at: float | None = None

    def transition(self, state: SessionState) -> None:
        if self.state.terminal:
            raise InvalidStateTransition(
                f"session {self.id} already {self.state.value}; cannot move to {state.value}"
            )
        self.state = state
        if state.terminal:
            self.ended_at = time.time()

    def record_error(self, message: str) -> None:
        self.errors.append(message)

    def artifacts(self) -> list[Path]:
        paths = [self.video_path, self.audio_path, self.merged_path, *self.clip_paths]
        return [p for p in paths if p is not None and p.exists() and p.stat().st_size > 0]

    @property
    def manifest_path(self) -> Path:
        return self.directory / f"session_{self.id}.json"


def new_session_id(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime(SESSION_ID_FORMAT)


def create_session(recordings_root: Path, *, now: datetime | None = None) -> Session:
    """Allocate a fresh id and create its directory; directories are never reused."""

    recordings_root.mkdir(parents=True, exist_ok=True)
    base_id = new_session_id(now)
    for attempt in range(MAX_ID_COLLISIONS):
        session_id = base_id if attempt == 0 else f"{base_id}_{attempt}"
        directory = recordings_root / session_id
        try:
            directory.mkdir(parents=False, exist_ok=False)
        except FileExistsError:
            continue
        return Session(id=session_id, directory=directory, started_at=time.time())
    raise SessionError(f"could not allocate a session directory under {recordings_root}")


def _relative(path: Path | None, root: Path) -> str | None:
    if path is None:
        return None
    try:
        return str(path.relative_to(root))
    except ValueError:
        return str(path)


def write_manifest(
    session: Session,
    *,
    detections: Iterable[DetectionEvent] = (),
    clip_windows: Iterable[tuple[float, float]] = (),
) -> Path:
    payload: dict[str, Any] = {
        "id": session.id,
        "state": session.state.value,
        "started_at": session.started_at,
        "ended_at": session.ended_at,
        "video": _relative(session.video_path, session.directory),
        "audio": _relative(session.audio_path, session.directory),
        "merged": _relative(session.merged_path, session.directory),
        "clips": [_relative(p, session.directory) for p in session.clip_paths],
        "detections": [event.timestamp for event in detections],
        "clip_windows": [[round(start, 3), round(end, 3)] for start, end in clip_windows],
        "errors": list(session.errors),
    }
    path = session.manifest_path
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)
        handle.write("\n")
    os.replace(tmp_path, path)
    return path

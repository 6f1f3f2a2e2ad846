from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from clipwatch.controller import SessionController
from clipwatch.encoder import EncoderResult
from clipwatch.file_wait import FileFinalizationWaiter
from clipwatch.postprocess import PostProcessingPipeline
from clipwatch.session import (
    AlreadyRecording,
    DetectionEvent,
    InvalidStateTransition,
    NotRecording,
    Session,
    SessionState,
)
from clipwatch.video_capture import NOT_RECORDING_TEXT, CaptureStartFailed


class FakeEncoder:
    def __init__(self, fail_on: set[int] | None = None):
        self.calls: list[list[str]] = []
        self.fail_on = fail_on or set()

    def run(self, args):
        args = [str(a) for a in args]
        self.calls.append(args)
        if len(self.calls) in self.fail_on:
            return EncoderResult(args=args, returncode=1, stderr="Conversion failed!")
        Path(args[-1]).write_bytes(b"\x00" * 64)
        return EncoderResult(args=args, returncode=0, stderr="")


class FakeVideo:
    def __init__(self, log: list[str], fail: bool = False):
        self.log = log
        self.fail = fail
        self.starts: list[Path] = []
        self.path: Path | None = None

    @property
    def is_recording(self) -> bool:
        return self.path is not None

    def elapsed_text(self) -> str:
        return "00:00:01" if self.path is not None else NOT_RECORDING_TEXT

    def start(self, session_dir: Path, session_id: str) -> Path:
        assert session_dir.is_dir(), "session directory must exist before producers start"
        if self.fail:
            raise CaptureStartFailed("ffmpeg not found")
        self.starts.append(session_dir)
        self.path = session_dir / f"video_{session_id}.mp4"
        self.log.append("video.start")
        return self.path

    def stop(self):
        self.log.append("video.stop")
        if self.path is None:
            return None
        self.path.write_bytes(b"v" * 512)
        self.path = None
        return 0


class FakeAudio:
    def __init__(self, log: list[str], fail: bool = False):
        self.log = log
        self.fail = fail
        self.audio_path: Path | None = None

    def start(self, session_dir: Path, session_id: str) -> bool:
        assert session_dir.is_dir()
        if self.fail:
            return False
        self.audio_path = session_dir / f"audio_{session_id}.wav"
        self.audio_path.write_bytes(b"RIFF")
        self.log.append("audio.start")
        return True

    def stop(self):
        self.log.append("audio.stop")
        path, self.audio_path = self.audio_path, None
        if path is not None:
            path.write_bytes(b"RIFF" + b"\x00" * 256)
        return path


class FakeDetector:
    def __init__(self, log: list[str], events: list[DetectionEvent] | None = None):
        self.log = log
        self.events = list(events or [])
        self.watching = False
        self.started = 0

    def start_watching(self) -> bool:
        self.started += 1
        self.watching = True
        self.log.append("detector.start")
        return True

    def stop_watching(self) -> None:
        self.watching = False
        self.log.append("detector.stop")

    def drain(self):
        assert not self.watching, "buffer read while the detector thread is alive"
        self.log.append("detector.drain")
        drained, self.events = self.events, []
        return drained


def _controller(
    tmp_path: Path,
    *,
    events=None,
    video_fail: bool = False,
    audio_fail: bool = False,
    encoder: FakeEncoder | None = None,
):
    log: list[str] = []
    waiter = FileFinalizationWaiter(max_retries=3, interval_ms=0, sleep=lambda _s: None)
    encoder = encoder or FakeEncoder()
    controller = SessionController(
        {"logging": {"dev_mode": False}},
        video=FakeVideo(log, fail=video_fail),
        audio=FakeAudio(log, fail=audio_fail),
        detector=FakeDetector(log, events),
        pipeline=PostProcessingPipeline(encoder=encoder, waiter=waiter),
        waiter=waiter,
        recordings_root=tmp_path / "recordings",
    )
    return controller, log, encoder


def test_two_detections_produce_one_clip(tmp_path: Path):
    events = [DetectionEvent(1002.0, 0.91, "record.png"), DetectionEvent(1009.0, 0.88, "record.png")]
    controller, _log, encoder = _controller(tmp_path, events=events)

    session = controller.start()
    assert controller.state is SessionState.RECORDING
    assert controller.elapsed_text() == "00:00:01"
    finished = controller.stop()

    assert finished is session
    assert session.state is SessionState.COMPLETE
    assert session.merged_path == session.directory / f"merged_{session.id}.mp4"
    assert [p.name for p in session.clip_paths] == [f"clip_{session.id}_part1.mp4"]
    clip_cmd = encoder.calls[1]
    assert clip_cmd[clip_cmd.index("-ss") + 1] == "0.000"
    assert clip_cmd[clip_cmd.index("-to") + 1] == "7.000"
    # the detection buffer is consumed by clipping
    assert session.detections == []
    assert controller.state is SessionState.IDLE
    assert controller.elapsed_text() == NOT_RECORDING_TEXT


def test_zero_detections_still_merge(tmp_path: Path):
    controller, _log, encoder = _controller(tmp_path)

    session = controller.start()
    controller.stop()

    assert session.state is SessionState.COMPLETE
    assert len(encoder.calls) == 1
    assert session.merged_path is not None and session.merged_path.exists()
    assert session.clip_paths == []


def test_audio_failure_gives_video_only_session(tmp_path: Path):
    controller, log, encoder = _controller(tmp_path, audio_fail=True, events=[DetectionEvent(1.0), DetectionEvent(2.0)])

    session = controller.start()
    assert "detector.start" in log
    controller.stop()

    assert session.state is SessionState.COMPLETE
    assert session.video_path is not None and session.video_path.exists()
    assert session.audio_path is None
    assert session.merged_path is None
    assert encoder.calls == []
    assert "audio capture unavailable" in session.errors


def test_stop_ordering(tmp_path: Path):
    controller, log, _encoder = _controller(tmp_path)

    controller.start()
    log.clear()
    controller.stop()

    assert log == ["audio.stop", "video.stop", "detector.stop", "detector.drain"]


def test_second_start_is_rejected_without_side_effects(tmp_path: Path):
    controller, _log, _encoder = _controller(tmp_path)
    session = controller.start()

    with pytest.raises(AlreadyRecording):
        controller.start()

    root = tmp_path / "recordings"
    assert [p.name for p in root.iterdir()] == [session.id]
    assert len(controller.video.starts) == 1
    assert controller.detector.started == 1
    controller.stop()


def test_stop_when_idle_is_rejected(tmp_path: Path):
    controller, log, _encoder = _controller(tmp_path)

    with pytest.raises(NotRecording):
        controller.stop()

    assert log == []
    assert not (tmp_path / "recordings").exists()
    assert controller.shutdown() is None


def test_both_producers_failing_raises(tmp_path: Path):
    controller, _log, _encoder = _controller(tmp_path, video_fail=True, audio_fail=True)

    with pytest.raises(CaptureStartFailed):
        controller.start()

    assert controller.state is SessionState.IDLE
    assert controller.last_session is not None
    assert controller.last_session.state is SessionState.FAILED
    assert controller.detector.started == 0
    # the controller accepts a new start afterwards
    with pytest.raises(CaptureStartFailed):
        controller.start()


def test_merge_failure_keeps_raw_recordings(tmp_path: Path):
    controller, _log, _encoder = _controller(
        tmp_path, encoder=FakeEncoder(fail_on={1}), events=[DetectionEvent(1.0), DetectionEvent(4.0)]
    )

    session = controller.start()
    controller.stop()

    assert session.state is SessionState.COMPLETE
    assert session.merged_path is None
    assert session.clip_paths == []
    assert any(err.startswith("merge:") for err in session.errors)
    assert session.video_path.exists() and session.audio_path.exists()


def test_manifest_records_outcome(tmp_path: Path):
    events = [DetectionEvent(10.0), DetectionEvent(12.5), DetectionEvent(20.0)]
    controller, _log, _encoder = _controller(tmp_path, events=events)

    session = controller.start()
    controller.stop()

    manifest = json.loads(session.manifest_path.read_text())
    assert manifest["id"] == session.id
    assert manifest["state"] == "complete"
    assert manifest["video"] == f"video_{session.id}.mp4"
    assert manifest["merged"] == f"merged_{session.id}.mp4"
    assert manifest["detections"] == [10.0, 12.5, 20.0]
    assert manifest["clip_windows"] == [[0.0, 2.5], [2.5, 10.0]]
    assert len(manifest["clips"]) == 2


def test_restart_uses_a_fresh_directory(tmp_path: Path):
    controller, _log, _encoder = _controller(tmp_path)

    first = controller.start()
    controller.stop()
    second = controller.start()
    controller.stop()

    assert first.directory != second.directory
    assert first.state is SessionState.COMPLETE
    assert second.state is SessionState.COMPLETE
    assert controller.last_session is second


def test_independent_controllers_do_not_share_state(tmp_path: Path):
    one, _log1, _enc1 = _controller(tmp_path / "a")
    two, _log2, _enc2 = _controller(tmp_path / "b")

    one.start()
    assert two.state is SessionState.IDLE
    two.start()
    one.stop()

    assert one.state is SessionState.IDLE
    assert two.state is SessionState.RECORDING
    two.stop()


class BlockingEncoder(FakeEncoder):
    """Holds the first ffmpeg job open until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def run(self, args):
        if not self.calls:
            self.entered.set()
            assert self.release.wait(10.0)
        return super().run(args)


def test_start_rejected_while_post_processing(tmp_path: Path):
    encoder = BlockingEncoder()
    controller, _log, _encoder = _controller(tmp_path, encoder=encoder)
    session = controller.start()

    stopper = threading.Thread(target=controller.stop)
    stopper.start()
    try:
        assert encoder.entered.wait(5.0)
        assert controller.state is SessionState.MERGING
        with pytest.raises(AlreadyRecording):
            controller.start()
        assert [p.name for p in (tmp_path / "recordings").iterdir()] == [session.id]
        assert len(controller.video.starts) == 1
    finally:
        encoder.release.set()
        stopper.join(10.0)

    assert session.state is SessionState.COMPLETE
    assert controller.state is SessionState.IDLE


def test_detector_start_error_keeps_capture_running(tmp_path: Path):
    controller, log, _encoder = _controller(tmp_path)

    def broken_start():
        raise PermissionError("icons directory not readable")

    controller.detector.start_watching = broken_start

    session = controller.start()

    assert controller.state is SessionState.RECORDING
    assert controller.video.is_recording
    assert "audio.start" in log
    assert any(err.startswith("detector unavailable: PermissionError") for err in session.errors)

    controller.stop()
    assert session.state is SessionState.COMPLETE
    assert session.merged_path is not None


@pytest.mark.parametrize("terminal", [SessionState.COMPLETE, SessionState.FAILED])
def test_terminal_state_is_set_exactly_once(tmp_path: Path, terminal: SessionState):
    session = Session(id="s", directory=tmp_path, started_at=0.0)
    session.transition(SessionState.RECORDING)
    session.transition(terminal)
    ended_at = session.ended_at

    assert ended_at is not None
    for target in (SessionState.COMPLETE, SessionState.FAILED, SessionState.RECORDING):
        with pytest.raises(InvalidStateTransition):
            session.transition(target)
    assert session.state is terminal
    assert session.ended_at == ended_at

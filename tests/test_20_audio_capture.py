from __future__ import annotations

import threading
import wave
from pathlib import Path

import pytest

from clipwatch.audio_capture import AudioCaptureAdapter, SoundDeviceSource
from clipwatch.session import AlreadyRecording


class FakeSource:
    """Delivers buffers from its own thread, like a PortAudio callback."""

    def __init__(self, buffers: list[bytes] | None = None):
        self.buffers = list(buffers or [])
        self.callback = None
        self.stopped = False
        self._thread: threading.Thread | None = None

    def start(self, callback):
        self.callback = callback
        self._thread = threading.Thread(target=self._deliver, daemon=True)
        self._thread.start()

    def _deliver(self):
        for buf in self.buffers:
            self.callback(buf)

    def stop(self):
        if self._thread is not None:
            self._thread.join()
        self.stopped = True


class BrokenSource:
    def start(self, callback):
        raise OSError("PortAudio library not found")

    def stop(self):  # pragma: no cover - never started
        raise AssertionError("stop() on a source that never started")


def _frame(value: int, samples: int = 480, channels: int = 2) -> bytes:
    return value.to_bytes(2, "little", signed=True) * (samples * channels)


def test_audio_buffers_written_in_arrival_order(tmp_path: Path):
    buffers = [_frame(v) for v in range(1, 41)]
    source = FakeSource(buffers)
    adapter = AudioCaptureAdapter(
        sample_rate=48000, channels=2, source_factory=lambda: source, flush_threshold=4096
    )

    assert adapter.start(tmp_path, "sid") is True
    assert adapter.is_recording
    path = adapter.stop()

    assert path == tmp_path / "audio_sid.wav"
    assert source.stopped
    with wave.open(str(path), "rb") as wav_file:
        assert wav_file.getnchannels() == 2
        assert wav_file.getsampwidth() == 2
        assert wav_file.getframerate() == 48000
        data = wav_file.readframes(wav_file.getnframes())
    assert data == b"".join(buffers)
    assert adapter.bytes_written == len(data)
    assert adapter.frames_written == 40 * 480


def test_audio_start_failure_leaves_no_file(tmp_path: Path, caplog):
    adapter = AudioCaptureAdapter(source_factory=BrokenSource)

    assert adapter.start(tmp_path, "sid") is False
    assert not adapter.is_recording
    assert not (tmp_path / "audio_sid.wav").exists()
    assert adapter.audio_path is None
    assert adapter.stop() is None
    assert any("failed to initialise" in record.message for record in caplog.records)


def test_audio_without_data_is_discarded(tmp_path: Path):
    adapter = AudioCaptureAdapter(source_factory=lambda: FakeSource([]))

    assert adapter.start(tmp_path, "sid") is True
    assert adapter.stop() is None
    assert not (tmp_path / "audio_sid.wav").exists()


def test_audio_disabled_in_config(tmp_path: Path):
    adapter = AudioCaptureAdapter.from_config({"enabled": False}, source_factory=lambda: FakeSource([b"x"]))

    assert adapter.start(tmp_path, "sid") is False
    assert list(tmp_path.iterdir()) == []


def test_audio_second_start_rejected(tmp_path: Path):
    adapter = AudioCaptureAdapter(source_factory=lambda: FakeSource([_frame(1)]))
    adapter.start(tmp_path, "one")
    try:
        with pytest.raises(AlreadyRecording):
            adapter.start(tmp_path, "two")
    finally:
        adapter.stop()
    assert not (tmp_path / "audio_two.wav").exists()


def test_audio_from_config_builds_sounddevice_source():
    adapter = AudioCaptureAdapter.from_config(
        {"sample_rate": 44100, "channels": 1, "device": "Monitor of Speakers", "blocksize": 1024}
    )
    source = adapter._source_factory()

    assert isinstance(source, SoundDeviceSource)
    assert adapter.sample_rate == 44100
    assert adapter.channels == 1
    assert source.device == "Monitor of Speakers"
    assert source.blocksize == 1024

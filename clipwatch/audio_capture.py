#!/usr/bin/env python3
"""
AudioCaptureAdapter: loopback/input capture into one WAV per session.

The audio subsystem pushes PCM buffers from its own thread. The callback only
enqueues; a dedicated writer thread is the sole consumer of the queue and the
sole owner of the WAV handle, so arrival order is write order and stop() can
drain before closing.
"""

from __future__ import annotations

import logging
import queue
import threading
import wave
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from clipwatch.ffmpeg_io import artifact_path
from clipwatch.session import AlreadyRecording

SAMPLE_WIDTH = 2  # 16-bit
DEFAULT_SAMPLE_RATE = 48000
DEFAULT_CHANNELS = 2
FLUSH_THRESHOLD_BYTES = 128 * 1024

AudioCallback = Callable[[bytes], None]


class SoundDeviceSource:
    """Push-style PCM source backed by a ``sounddevice.RawInputStream``."""

    def __init__(
        self,
        *,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
        device: Any = None,
        blocksize: int = 0,
    ) -> None:
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.device = device
        self.blocksize = int(blocksize or 0)
        self._stream: Any = None
        self._callback: Optional[AudioCallback] = None
        self._log = logging.getLogger("audio_capture")

    def start(self, callback: AudioCallback) -> None:
        # PortAudio is loaded on first use; a missing library surfaces here as
        # an audio start failure instead of breaking the whole package import.
        import sounddevice as sd

        self._callback = callback
        stream = sd.RawInputStream(
            samplerate=self.sample_rate,
            channels=self.channels,
            dtype="int16",
            device=self.device,
            blocksize=self.blocksize,
            callback=self._on_data,
        )
        try:
            stream.start()
        except Exception:
            stream.close()
            raise
        self._stream = stream

    def _on_data(self, indata, frames, time_info, status) -> None:  # noqa: ARG002
        if status:
            self._log.debug("audio stream status: %s", status)
        callback = self._callback
        if callback is not None:
            callback(bytes(indata))

    def stop(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()


class _WavWriter(threading.Thread):
    """
    Dedicated disk-writer thread.
    Protocol on the queue:
      b'<pcm-bytes>' appended in arrival order
      None -> flush, close the file, exit
    """

    def __init__(self, audio_q: "queue.Queue[Optional[bytes]]", wav: wave.Wave_write, flush_threshold: int):
        super().__init__(name="audio_writer", daemon=True)
        self.q = audio_q
        self.wav = wav
        self.flush_threshold = flush_threshold
        self.buf = bytearray()
        self.bytes_written = 0
        self.error: Exception | None = None

    def _flush(self) -> None:
        if self.buf:
            self.wav.writeframes(self.buf)
            self.bytes_written += len(self.buf)
            self.buf.clear()

    def run(self) -> None:
        try:
            while True:
                item = self.q.get()
                if item is None:
                    break
                if self.error is not None:
                    continue
                self.buf.extend(item)
                if len(self.buf) >= self.flush_threshold:
                    try:
                        self._flush()
                    except OSError as exc:
                        self.error = exc
                        logging.getLogger("audio_capture").error("WAV write failed: %r", exc)
        finally:
            try:
                if self.error is None:
                    self._flush()
            except OSError as exc:
                self.error = exc
            finally:
                self.wav.close()


class AudioCaptureAdapter:
    def __init__(
        self,
        *,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
        source_factory: Callable[[], Any] | None = None,
        flush_threshold: int = FLUSH_THRESHOLD_BYTES,
        enabled: bool = True,
        log_level: int = logging.INFO,
    ) -> None:
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.enabled = bool(enabled)
        self.flush_threshold = int(flush_threshold)
        self._source_factory = source_factory or (
            lambda: SoundDeviceSource(sample_rate=self.sample_rate, channels=self.channels)
        )

        self._log = logging.getLogger("audio_capture")
        self._log.setLevel(log_level)

        self._lock = threading.Lock()
        self._source: Any = None
        self._queue: "queue.Queue[Optional[bytes]] | None" = None
        self._writer: _WavWriter | None = None
        self.audio_path: Optional[Path] = None
        self.bytes_written = 0

    @classmethod
    def from_config(cls, audio_cfg: Mapping[str, Any] | None, **kwargs: Any) -> "AudioCaptureAdapter":
        block = dict(audio_cfg or {})
        sample_rate = int(block.get("sample_rate", DEFAULT_SAMPLE_RATE))
        channels = int(block.get("channels", DEFAULT_CHANNELS))
        device = block.get("device")
        blocksize = int(block.get("blocksize", 0) or 0)
        kwargs.setdefault(
            "source_factory",
            lambda: SoundDeviceSource(
                sample_rate=sample_rate, channels=channels, device=device, blocksize=blocksize
            ),
        )
        return cls(
            sample_rate=sample_rate,
            channels=channels,
            enabled=bool(block.get("enabled", True)),
            **kwargs,
        )

    @property
    def is_recording(self) -> bool:
        with self._lock:
            return self._writer is not None

    @property
    def frames_written(self) -> int:
        return self.bytes_written // (SAMPLE_WIDTH * self.channels)

    def _open_wav(self, path: Path) -> wave.Wave_write:
        wav = wave.open(str(path), "wb")
        wav.setnchannels(self.channels)
        wav.setsampwidth(SAMPLE_WIDTH)
        wav.setframerate(self.sample_rate)
        return wav

    def start(self, session_dir: Path, session_id: str) -> bool:
        """Begin capture; False (logged) when the audio subsystem is unavailable."""
        if not self.enabled:
            self._log.info("Audio capture disabled; recording video only")
            return False
        with self._lock:
            if self._writer is not None:
                raise AlreadyRecording("audio capture already running")
            path = artifact_path(session_dir, "audio", session_id, "wav")
            self.bytes_written = 0
            audio_q: "queue.Queue[Optional[bytes]]" = queue.Queue()
            try:
                wav = self._open_wav(path)
            except OSError as exc:
                self._log.error("Cannot open %s for audio capture: %r", path, exc)
                return False
            writer = _WavWriter(audio_q, wav, self.flush_threshold)
            writer.start()
            try:
                source = self._source_factory()
                source.start(audio_q.put)
            except Exception as exc:  # noqa: BLE001 - any backend failure disables audio only
                self._log.error("Audio capture failed to initialise: %r", exc)
                audio_q.put(None)
                writer.join()
                self._discard(path)
                return False
            self._source = source
            self._queue = audio_q
            self._writer = writer
            self.audio_path = path
        self._log.info("Audio capture started -> %s", path)
        return True

    def stop(self) -> Optional[Path]:
        """Stop the source, drain the queue, close the WAV. Returns the file if any audio landed."""
        with self._lock:
            source, audio_q, writer = self._source, self._queue, self._writer
            self._source = self._queue = self._writer = None
        if writer is None or audio_q is None:
            self._log.info("No active audio recording to stop")
            return None

        self._log.info("Stopping audio recording...")
        try:
            source.stop()
        except Exception as exc:  # noqa: BLE001 - still drain and close the file
            self._log.warning("Audio source stop raised: %r", exc)
        audio_q.put(None)
        writer.join()
        self.bytes_written = writer.bytes_written

        path = self.audio_path
        if writer.error is not None:
            self._log.error("Audio file %s incomplete: %r", path, writer.error)
        if path is None or self.bytes_written == 0:
            self._log.warning("No audio data captured; discarding %s", path)
            if path is not None:
                self._discard(path)
            return None
        self._log.info("Audio saved to: %s (%d bytes)", path, self.bytes_written)
        return path

    def _discard(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            self._log.warning("Could not remove empty audio file %s: %r", path, exc)
        if self.audio_path == path:
            self.audio_path = None

"""
External encoder capability.

Everything that touches an ffmpeg OS process goes through ``FFmpegEncoder``:
- start(args) -> process handle for long-running capture
- stop(handle, grace) -> exit status (quit token, bounded wait, then kill)
- run(args) -> EncoderResult for one-shot merge/clip jobs

Tests substitute an object with the same three methods.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

QUIT_TOKEN = b"q\n"
DEFAULT_STOP_GRACE_SEC = 3.0
KILL_REAP_TIMEOUT_SEC = 2.0


@dataclass
class EncoderResult:
    args: list[str]
    returncode: int | None
    stderr: str
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.error is None and self.returncode == 0

    def describe_failure(self) -> str:
        if self.error is not None:
            return f"{type(self.error).__name__}: {self.error}"
        text = (self.stderr or "").strip()
        if text:
            return text
        return f"encoder exited with rc={self.returncode}"


class FFmpegEncoder:
    def __init__(self, *, quit_token: bytes = QUIT_TOKEN, log_level: int = logging.INFO):
        self.quit_token = quit_token
        self._log = logging.getLogger("encoder")
        self._log.setLevel(log_level)

    def start(self, args: Sequence[str]) -> subprocess.Popen:
        """Spawn a long-running encoder. Raises OSError when it cannot be spawned."""
        cmd = [str(a) for a in args]
        self._log.info("Launching ffmpeg: %s", " ".join(cmd))
        # Own session on POSIX so a terminal Ctrl-C does not kill ffmpeg before
        # it receives the quit token and finalises the container.
        return subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            bufsize=0,
            start_new_session=(os.name == "posix"),
        )

    def stop(self, proc: subprocess.Popen, *, grace: float = DEFAULT_STOP_GRACE_SEC) -> Optional[int]:
        """
        Ask ffmpeg to finish its output, then make sure the process is gone.
        - Write the quit token to stdin and flush.
        - Wait up to ``grace`` seconds for a clean exit.
        - Kill and reap if it is still alive.
        """
        rc = proc.poll()
        if rc is not None:
            self._log.info("ffmpeg already exited rc=%s", rc)
            self._close_stdin(proc)
            return rc

        stdin = proc.stdin
        if stdin is not None:
            try:
                stdin.write(self.quit_token)
                stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as e:
                self._log.debug("ffmpeg quit token write error: %r", e)

        try:
            rc = proc.wait(timeout=max(0.0, float(grace)))
            self._log.info("ffmpeg exited after quit token rc=%s", rc)
        except subprocess.TimeoutExpired:
            self._log.warning("ffmpeg did not exit within %.1fs; killing", grace)
            try:
                proc.kill()
            except OSError as e:
                self._log.exception("ffmpeg kill() raised; process may remain: %r", e)
            try:
                rc = proc.wait(timeout=KILL_REAP_TIMEOUT_SEC)
                self._log.info("ffmpeg killed; rc=%s", rc)
            except subprocess.TimeoutExpired:
                self._log.error("ffmpeg still not reaped after kill; zombie risk")
                rc = None
        finally:
            self._close_stdin(proc)
        return rc

    def run(self, args: Sequence[str]) -> EncoderResult:
        """Run one encoder job to completion, capturing stderr."""
        cmd = [str(a) for a in args]
        self._log.info("Running ffmpeg: %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                check=False,
            )
        except OSError as exc:
            self._log.error("ffmpeg could not be started: %r", exc)
            return EncoderResult(args=cmd, returncode=None, stderr="", error=exc)
        stderr = (proc.stderr or b"").decode("utf-8", errors="replace")
        if proc.returncode != 0:
            self._log.warning("ffmpeg exited rc=%s: %s", proc.returncode, stderr.strip())
        return EncoderResult(args=cmd, returncode=proc.returncode, stderr=stderr)

    def _close_stdin(self, proc: subprocess.Popen) -> None:
        try:
            if proc.stdin:
                proc.stdin.close()
        except (BrokenPipeError, OSError) as e:
            self._log.debug("ffmpeg stdin close error: %r", e)

"""Wait for files written by external processes to stop growing."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

DEFAULT_MAX_RETRIES = 10
DEFAULT_INTERVAL_MS = 500

_log = logging.getLogger("file_wait")


@dataclass(frozen=True)
class StabilityResult:
    path: Path
    stable: bool
    size: int | None
    attempts: int

    @property
    def timed_out(self) -> bool:
        return not self.stable


def _read_size(path: Path) -> int:
    # Opening (not just stat) surfaces a lock still held by the producer.
    with path.open("rb") as handle:
        return os.fstat(handle.fileno()).st_size


def wait_for_stable(
    path: str | os.PathLike[str],
    max_retries: int = DEFAULT_MAX_RETRIES,
    interval_ms: float = DEFAULT_INTERVAL_MS,
    *,
    sleep: Callable[[float], None] | None = None,
) -> StabilityResult:
    """Poll ``path`` until two consecutive size reads agree.

    Every poll that does not confirm stability (the first read, a changed size,
    a failed open) counts as one unstable read. After ``max_retries`` of them
    the timeout outcome is returned; nothing is raised.
    """

    target = Path(path)
    sleeper = sleep or time.sleep
    interval = max(0.0, float(interval_ms)) / 1000.0
    retries = max(1, int(max_retries))

    previous: int | None = None
    unstable = 0
    while True:
        try:
            size = _read_size(target)
        except OSError as exc:
            _log.info("cannot open %s for reading yet: %s", target, exc)
            previous = None
        else:
            if previous is not None and size == previous:
                _log.debug("%s stable at %d bytes after %d polls", target, size, unstable + 1)
                return StabilityResult(target, True, size, unstable + 1)
            previous = size

        unstable += 1
        if unstable >= retries:
            break
        sleeper(interval)

    _log.warning("%s did not stabilise after %d polls; continuing anyway", target, unstable)
    return StabilityResult(target, False, previous, unstable)


class FileFinalizationWaiter:
    """``wait_for_stable`` bound to configured retry defaults."""

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        interval_ms: float = DEFAULT_INTERVAL_MS,
        *,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.max_retries = int(max_retries)
        self.interval_ms = float(interval_ms)
        self._sleep = sleep

    @classmethod
    def from_config(cls, cfg_block: Mapping[str, Any] | None) -> "FileFinalizationWaiter":
        block = cfg_block or {}
        return cls(
            max_retries=int(block.get("max_retries", DEFAULT_MAX_RETRIES)),
            interval_ms=float(block.get("interval_ms", DEFAULT_INTERVAL_MS)),
        )

    def wait_for_stable(self, path: str | os.PathLike[str]) -> StabilityResult:
        return wait_for_stable(path, self.max_retries, self.interval_ms, sleep=self._sleep)

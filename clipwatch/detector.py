#!/usr/bin/env python3
"""
VisualEventDetector: watch the screen (or a video feed) for reference icons.

One daemon thread samples frames, scores every template against each frame
and emits a DetectionEvent onto a queue on the first score above threshold.
After a hit the loop cools down before sampling again so one on-screen icon
yields one event. Stop is cooperative: a shared Event ends any wait early and
the thread exits at the top of the next iteration.
"""

from __future__ import annotations

import logging
import math
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence

import cv2
import mss
import numpy as np

from clipwatch.config import templates_dir as _templates_dir
from clipwatch.session import DetectionEvent

DEFAULT_THRESHOLD = 0.8
DEFAULT_COOLDOWN_SEC = 10.0
DEFAULT_IDLE_INTERVAL_SEC = 0.1
DEFAULT_EXTENSIONS = (".png", ".jpg", ".jpeg", ".bmp")

_log = logging.getLogger("detector")


@dataclass(frozen=True)
class Template:
    name: str
    image: np.ndarray


def load_templates(directory: Path, extensions: Iterable[str] = DEFAULT_EXTENSIONS) -> List[Template]:
    """Load every image in ``directory`` as single-channel grayscale."""
    directory = Path(directory)
    if not directory.is_dir():
        _log.info("Template directory %s does not exist", directory)
        return []
    wanted = {ext.lower() for ext in extensions}
    try:
        entries = sorted(directory.iterdir())
    except OSError as exc:
        _log.error("Cannot list template directory %s: %r", directory, exc)
        return []
    templates: List[Template] = []
    for path in entries:
        if not path.is_file() or path.suffix.lower() not in wanted:
            continue
        image = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
        if image is None or image.size == 0:
            _log.warning("Skipping unreadable template %s", path)
            continue
        templates.append(Template(path.name, image))
    _log.info("Found %d template(s) in %s", len(templates), directory)
    return templates


def to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def edge_match_score(
    frame: np.ndarray,
    template: np.ndarray,
    *,
    canny_low: float = 100.0,
    canny_high: float = 200.0,
) -> float:
    """Best normalised correlation of the template's edges inside the frame's edges."""
    gray = to_gray(frame)
    icon = to_gray(template)
    if icon.shape[0] > gray.shape[0] or icon.shape[1] > gray.shape[1]:
        return 0.0
    frame_edges = cv2.Canny(gray, canny_low, canny_high)
    icon_edges = cv2.Canny(icon, canny_low, canny_high)
    # A flat template has no edges and would correlate with anything.
    if not np.any(icon_edges):
        return 0.0
    result = cv2.matchTemplate(frame_edges, icon_edges, cv2.TM_CCOEFF_NORMED)
    _, max_val, _, _ = cv2.minMaxLoc(result)
    if not math.isfinite(max_val):
        return 0.0
    return float(max_val)


class ScreenFrameSource:
    """Full-monitor screenshots via mss (BGRA frames)."""

    def __init__(self, monitor: int = 1):
        self.monitor = int(monitor)
        self._sct: Any = None

    def open(self) -> None:
        # mss handles are bound to the thread that created them.
        self._sct = mss.mss()

    def grab(self) -> np.ndarray:
        if self._sct is None:
            self.open()
        monitors = self._sct.monitors
        index = self.monitor if 0 <= self.monitor < len(monitors) else 0
        return np.asarray(self._sct.grab(monitors[index]))

    def close(self) -> None:
        sct = self._sct
        self._sct = None
        if sct is not None:
            sct.close()


class VideoFeedFrameSource:
    """Frames from a live capture device or stream URL (BGR frames)."""

    def __init__(self, device: int | str = 0):
        self.device = device
        self._cap: Any = None

    def open(self) -> None:
        cap = cv2.VideoCapture(self.device)
        if not cap.isOpened():
            cap.release()
            raise RuntimeError(f"video feed {self.device!r} could not be opened")
        self._cap = cap

    def grab(self) -> np.ndarray:
        if self._cap is None:
            self.open()
        ok, frame = self._cap.read()
        if not ok or frame is None:
            raise RuntimeError(f"no frame from video feed {self.device!r}")
        return frame

    def close(self) -> None:
        cap = self._cap
        self._cap = None
        if cap is not None:
            cap.release()


def frame_source_from_config(detector_cfg: Mapping[str, Any]) -> Callable[[], Any]:
    kind = str(detector_cfg.get("source") or "screen").strip().lower()
    if kind == "video":
        device = detector_cfg.get("video_device", 0)
        return lambda: VideoFeedFrameSource(device)
    monitor = int(detector_cfg.get("monitor", 1))
    return lambda: ScreenFrameSource(monitor)


Matcher = Callable[[np.ndarray, np.ndarray], float]


class VisualEventDetector:
    def __init__(
        self,
        templates: Optional[Sequence[Template]] = None,
        *,
        templates_dir: Optional[Path] = None,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        frame_source_factory: Optional[Callable[[], Any]] = None,
        matcher: Optional[Matcher] = None,
        threshold: float = DEFAULT_THRESHOLD,
        cooldown: float = DEFAULT_COOLDOWN_SEC,
        idle_interval: float = DEFAULT_IDLE_INTERVAL_SEC,
        clock: Callable[[], float] = time.time,
        enabled: bool = True,
        log_level: int = logging.INFO,
    ):
        self._fixed_templates = list(templates) if templates is not None else None
        self.templates_dir = templates_dir
        self.extensions = tuple(extensions)
        self._source_factory = frame_source_factory or (lambda: ScreenFrameSource())
        self._matcher: Matcher = matcher or edge_match_score
        self.threshold = float(threshold)
        self.cooldown = max(0.0, float(cooldown))
        self.idle_interval = max(0.0, float(idle_interval))
        self._clock = clock
        self.enabled = bool(enabled)

        self._log = _log
        self._log.setLevel(log_level)

        self._stop = threading.Event()
        self._t: Optional[threading.Thread] = None
        self._events: "queue.Queue[DetectionEvent]" = queue.Queue()
        self.templates: List[Template] = []
        self.iteration_errors = 0

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any], **kwargs: Any) -> "VisualEventDetector":
        block = cfg.get("detector", {})
        canny_low = float(block.get("canny_low", 100.0))
        canny_high = float(block.get("canny_high", 200.0))
        kwargs.setdefault(
            "matcher",
            lambda frame, icon: edge_match_score(frame, icon, canny_low=canny_low, canny_high=canny_high),
        )
        kwargs.setdefault("frame_source_factory", frame_source_from_config(block))
        kwargs.setdefault("templates_dir", _templates_dir(cfg))
        return cls(
            extensions=block.get("extensions") or DEFAULT_EXTENSIONS,
            threshold=float(block.get("threshold", DEFAULT_THRESHOLD)),
            cooldown=float(block.get("cooldown_sec", DEFAULT_COOLDOWN_SEC)),
            idle_interval=float(block.get("idle_interval_sec", DEFAULT_IDLE_INTERVAL_SEC)),
            enabled=bool(block.get("enabled", True)),
            **kwargs,
        )

    @property
    def is_watching(self) -> bool:
        return self._t is not None

    def _load(self) -> List[Template]:
        if self._fixed_templates is not None:
            return list(self._fixed_templates)
        if self.templates_dir is None:
            return []
        directory = Path(self.templates_dir)
        if not directory.exists():
            # An empty icons/ folder shows users where reference images go.
            try:
                directory.mkdir(parents=True, exist_ok=True)
                self._log.info("Created template directory %s; drop reference icons there", directory)
            except OSError as exc:
                self._log.warning("Cannot create template directory %s: %r", directory, exc)
            return []
        return load_templates(directory, self.extensions)

    def start_watching(self) -> bool:
        if not self.enabled:
            self._log.info("Detector disabled in config; not watching")
            return False
        if self._t is not None:
            self._log.info("Detector is already running")
            return False
        self.templates = self._load()
        if not self.templates:
            self._log.warning("No reference templates found; detector will not run")
            return False
        # stop() leaves the flag set; clear it before spawning a new worker.
        self._stop.clear()
        self._events = queue.Queue()
        self.iteration_errors = 0
        self._t = threading.Thread(target=self._run, name="detector", daemon=True)
        self._t.start()
        self._log.info("Detector started with %d template(s)", len(self.templates))
        return True

    def stop_watching(self) -> None:
        t = self._t
        if t is None:
            self._log.info("Detector is not running")
            return
        self._log.info("Stopping detector...")
        self._stop.set()
        t.join()
        self._t = None
        self._log.info("Detector stopped")

    def drain(self) -> List[DetectionEvent]:
        """Read and clear buffered detections; call only after stop_watching()."""
        drained: List[DetectionEvent] = []
        while True:
            try:
                drained.append(self._events.get_nowait())
            except queue.Empty:
                break
        return drained

    def _best_match(self, frame: np.ndarray) -> tuple[Optional[Template], float]:
        for template in self.templates:
            score = float(self._matcher(frame, template.image))
            if score > self.threshold:
                return template, score
        return None, 0.0

    def _run(self) -> None:
        source = self._source_factory()
        try:
            while not self._stop.is_set():
                try:
                    frame = source.grab()
                    template, score = self._best_match(frame)
                except Exception:  # noqa: BLE001 - transient capture/match errors
                    self.iteration_errors += 1
                    self._log.exception("Detector iteration failed; continuing")
                    self._stop.wait(self.idle_interval)
                    continue

                if template is None:
                    self._stop.wait(self.idle_interval)
                    continue

                event = DetectionEvent(self._clock(), score, template.name)
                self._events.put(event)
                self._log.info(
                    "Icon %s detected at %.3f (score %.2f, threshold %.2f); cooling down %.1fs",
                    template.name,
                    event.timestamp,
                    score,
                    self.threshold,
                    self.cooldown,
                )
                self._stop.wait(self.cooldown)
        finally:
            try:
                source.close()
            except Exception as exc:  # noqa: BLE001 - diagnostics only
                self._log.debug("frame source close error: %r", exc)

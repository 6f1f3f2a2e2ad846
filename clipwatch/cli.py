#!/usr/bin/env python3
"""
Console front end.

  s  start recording
  x  stop recording (merge + clips run before the prompt returns)
  t  show state and recording time
  q  quit (an active recording is stopped first)
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from typing import Iterable, Optional, TextIO

from clipwatch import config as config_module
from clipwatch.controller import SessionController
from clipwatch.detector import load_templates
from clipwatch.session import Session, SessionError
from clipwatch.video_capture import CaptureStartFailed

MENU = "[s] start  [x] stop  [t] time  [q] quit"


def configure_logging(cfg) -> None:
    dev_mode = bool(cfg.get("logging", {}).get("dev_mode", False))
    logging.basicConfig(
        level=logging.DEBUG if dev_mode else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    )


def _summary(session: Session) -> str:
    lines = [f"Session {session.id}: {session.state.value}", f"  directory: {session.directory}"]
    for label, path in (("video", session.video_path), ("audio", session.audio_path), ("merged", session.merged_path)):
        if path is not None:
            lines.append(f"  {label}: {path.name}")
    for clip in session.clip_paths:
        lines.append(f"  clip: {clip.name}")
    for error in session.errors:
        lines.append(f"  error: {error}")
    return "\n".join(lines)


def run_menu(controller: SessionController, stdin: TextIO = sys.stdin, out: TextIO = sys.stdout) -> int:
    print(MENU, file=out, flush=True)
    try:
        for raw in stdin:
            choice = raw.strip().lower()
            if choice == "s":
                try:
                    session = controller.start()
                except (SessionError, CaptureStartFailed) as exc:
                    print(f"[menu] {exc}", file=out, flush=True)
                else:
                    print(f"[menu] Recording session {session.id}", file=out, flush=True)
            elif choice == "x":
                try:
                    session = controller.stop()
                except SessionError as exc:
                    print(f"[menu] {exc}", file=out, flush=True)
                else:
                    print(_summary(session), file=out, flush=True)
            elif choice == "t":
                print(
                    f"[menu] {controller.state.value} - Recording Time: {controller.elapsed_text()}",
                    file=out,
                    flush=True,
                )
            elif choice == "q":
                break
            elif choice:
                print(MENU, file=out, flush=True)
    finally:
        session = controller.shutdown()
        if session is not None:
            print(_summary(session), file=out, flush=True)
    return 0


def run_timed(controller: SessionController, duration: float, out: TextIO = sys.stdout) -> int:
    session = controller.start()
    print(f"[record] Recording session {session.id} for {duration:.1f}s", file=out, flush=True)
    try:
        time.sleep(max(0.0, duration))
    except KeyboardInterrupt:
        print("[record] Interrupted; stopping early", file=out, flush=True)
    finished = controller.stop()
    print(_summary(finished), file=out, flush=True)
    return 0 if finished.state.value == "complete" else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Screen + audio recorder with icon-triggered clips")
    parser.add_argument("--config", help="Path to a config.yaml (sets CLIPWATCH_CONFIG)")
    parser.add_argument("--duration", type=float, help="Record one session for N seconds, then exit")
    parser.add_argument("--list-templates", action="store_true", help="Print loaded reference templates and exit")
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    if args.config:
        os.environ["CLIPWATCH_CONFIG"] = args.config
        cfg = config_module.reload_cfg()
    else:
        cfg = config_module.get_cfg()
    configure_logging(cfg)

    active = config_module.active_config_path()
    if active is not None:
        print(f"[config] using {active}", flush=True)
    else:
        searched = ", ".join(str(p) for p in config_module.search_paths())
        print(f"[config] no config file found (searched: {searched}); using defaults", flush=True)

    if args.list_templates:
        directory = config_module.templates_dir(cfg)
        templates = load_templates(directory, cfg["detector"].get("extensions") or ())
        print(f"{len(templates)} template(s) in {directory}")
        for template in templates:
            height, width = template.image.shape[:2]
            print(f"  {template.name} ({width}x{height})")
        return 0

    controller = SessionController(cfg)
    if args.duration is not None:
        try:
            return run_timed(controller, args.duration)
        except CaptureStartFailed as exc:
            print(f"[record] {exc}", file=sys.stderr, flush=True)
            return 1
    try:
        return run_menu(controller)
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

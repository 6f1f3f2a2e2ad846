#!/usr/bin/env python3
"""
Unified configuration loader for clipwatch.

Load order (earlier entries override later ones):
  1) CLIPWATCH_CONFIG (env, absolute or relative to CWD)
  2) /etc/clipwatch/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "base_dir": "~/clipwatch",
        "recordings_subdir": "recordings",
        "templates_dir": "",  # empty -> <base_dir>/icons
    },
    "ffmpeg": {
        "binary": "ffmpeg",
        "loglevel": "error",
    },
    "video": {
        "input_format": "",  # empty -> chosen per platform
        "input": "",
        "framerate": 60,
        "video_size": "1920x1080",
        "offset_x": 0,
        "offset_y": 0,
        "rtbufsize": "100M",
        "codec": "libx264",
        "preset": "ultrafast",
        "pix_fmt": "yuv420p",
        "extra_args": [],
        "container": "mp4",
        "stop_grace_sec": 3.0,
    },
    "audio": {
        "enabled": True,
        "device": None,
        "sample_rate": 48000,
        "channels": 2,
        "blocksize": 0,
    },
    "detector": {
        "enabled": True,
        "source": "screen",  # screen | video
        "monitor": 1,
        "video_device": 0,
        "threshold": 0.8,
        "cooldown_sec": 10.0,
        "idle_interval_sec": 0.1,
        "canny_low": 100.0,
        "canny_high": 200.0,
        "extensions": [".png", ".jpg", ".jpeg", ".bmp"],
    },
    "finalize": {
        "max_retries": 10,
        "interval_ms": 500,
    },
    "clips": {
        "mode": "pairwise",  # pairwise | window
        "window_sec": 5.0,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

CLIP_MODES = {"pairwise", "window"}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        print(f"[config] WARN: ignoring unreadable config {path}: {exc}", flush=True)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("CLIPWATCH_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/clipwatch/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    base_dir = os.getenv("CLIPWATCH_BASE_DIR", "").strip()
    if base_dir:
        cfg.setdefault("paths", {})["base_dir"] = base_dir
    templates = os.getenv("CLIPWATCH_TEMPLATES_DIR", "").strip()
    if templates:
        cfg.setdefault("paths", {})["templates_dir"] = templates

    ffmpeg_bin = os.getenv("FFMPEG_BIN", "").strip()
    if ffmpeg_bin:
        cfg.setdefault("ffmpeg", {})["binary"] = ffmpeg_bin

    device = os.getenv("CLIPWATCH_AUDIO_DEVICE", "").strip()
    if device:
        cfg.setdefault("audio", {})["device"] = int(device) if device.isdigit() else device

    if "CLIPWATCH_MATCH_THRESHOLD" in os.environ:
        try:
            threshold = float(os.environ["CLIPWATCH_MATCH_THRESHOLD"])
        except ValueError:
            pass
        else:
            cfg.setdefault("detector", {})["threshold"] = threshold

    mode = os.getenv("CLIPWATCH_CLIP_MODE", "").strip().lower()
    if mode in CLIP_MODES:
        cfg.setdefault("clips", {})["mode"] = mode


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (clipwatch/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (OSError, IndexError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        if active is None:
            try:
                if candidate.exists():
                    active = candidate
            except OSError:
                pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    global _active_config_path
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    global _search_paths
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def base_dir(cfg: Mapping[str, Any]) -> Path:
    return Path(str(cfg["paths"]["base_dir"])).expanduser()


def recordings_dir(cfg: Mapping[str, Any]) -> Path:
    return base_dir(cfg) / str(cfg["paths"].get("recordings_subdir") or "recordings")


def templates_dir(cfg: Mapping[str, Any]) -> Path:
    configured = str(cfg["paths"].get("templates_dir") or "").strip()
    if configured:
        return Path(configured).expanduser()
    return base_dir(cfg) / "icons"

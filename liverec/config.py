#!/usr/bin/env python3
"""
Unified configuration loader for liverec.

Load order (first found wins):
  1) LIVEREC_CONFIG (env, absolute or relative to CWD)
  2) /etc/liverec/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import os
import sys
from dataclasses import dataclass
from datetime import timezone, tzinfo
from pathlib import Path
from typing import Any, Dict, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from liverec.chzzk_api import Auth

VIDEO_CODECS = {"copy", "libx264", "libx265", "libsvtav1", "h264_nvenc", "hevc_nvenc", "av1_nvenc"}
AUDIO_CODECS = {"copy", "aac", "libopus", "libmp3lame", "flac"}

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "recordings_dir": "/apps/liverec/recordings",
    },
    "channels": [],
    "auth": {
        "nid_aut": "",
        "nid_ses": "",
    },
    "post_process": {
        "enabled": False,
        "video_codec": "copy",
        "audio_codec": "copy",
    },
    "binaries": {
        "streamlink": "streamlink",
        "ffmpeg": "ffmpeg",
        "mkvpropedit": "mkvpropedit",
    },
    "timezone": "Asia/Seoul",
    "session": {
        "poll_interval_sec": 5.0,
        "dedup_window_sec": 60,
        "min_duration_sec": 15.0,
        "audio_language": "ko",
        "shift_chapter_boundaries": True,
    },
    "api": {
        "base_url": "https://api.chzzk.naver.com",
        "timeout_sec": 5.0,
    },
    "slave": {
        "enabled": False,
        "master_url": "",
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_LOG = logging.getLogger("config")


class ConfigError(Exception):
    """Raised when the configuration cannot describe a runnable recorder."""


@dataclass(frozen=True)
class Channel:
    channel_id: str
    channel_name: str


@dataclass(frozen=True)
class PostProcess:
    enabled: bool = False
    video_codec: str = "copy"
    audio_codec: str = "copy"


@dataclass(frozen=True)
class SessionSettings:
    poll_interval: float = 5.0
    dedup_window: int = 60
    min_duration: float = 15.0
    audio_language: str = "ko"
    shift_chapter_boundaries: bool = True


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        print(f"[config] WARNING: ignoring unreadable {path}: {exc}", file=sys.stderr, flush=True)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("LIVEREC_CONFIG")
    if env_cfg:
        try:
            search.append(Path(env_cfg).expanduser().resolve())
        except OSError:
            search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/liverec/config.yaml"),
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


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    # Paths
    if "REC_DIR" in os.environ:
        cfg.setdefault("paths", {})["recordings_dir"] = os.environ["REC_DIR"]
    # Credentials
    for env_key, key in (("NID_AUT", "nid_aut"), ("NID_SES", "nid_ses")):
        if env_key in os.environ:
            cfg.setdefault("auth", {})[key] = os.environ[env_key].strip()
    # A channel given via env is recorded ahead of the configured list
    channel_id = os.environ.get("CHANNEL_ID", "").strip()
    if channel_id:
        channel_name = os.environ.get("CHANNEL_NAME", "").strip() or channel_id
        channels = [
            entry
            for entry in cfg.get("channels") or []
            if not (isinstance(entry, dict) and entry.get("channel_id") == channel_id)
        ]
        cfg["channels"] = [{"channel_id": channel_id, "channel_name": channel_name}] + channels

    env_map = {
        "POST_PROCESS": ("post_process", "enabled", _parse_bool),
        "VIDEO_CODEC": ("post_process", "video_codec", str),
        "AUDIO_CODEC": ("post_process", "audio_codec", str),
        "SLAVE": ("slave", "enabled", _parse_bool),
        "MASTER_URL": ("slave", "master_url", str),
        "POLL_INTERVAL_SEC": ("session", "poll_interval_sec", float),
        "STREAMLINK_BINARY": ("binaries", "streamlink", str),
        "FFMPEG_BINARY": ("binaries", "ffmpeg", str),
        "MKVPROPEDIT_BINARY": ("binaries", "mkvpropedit", str),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key].strip())
            except ValueError:
                pass

    if "TIMEZONE" in os.environ:
        value = os.environ["TIMEZONE"].strip()
        if value:
            cfg["timezone"] = value


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (liverec/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
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
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def _channels(cfg: Mapping[str, Any]) -> list[Channel]:
    raw = cfg.get("channels")
    if not isinstance(raw, list):
        return []
    channels: list[Channel] = []
    for entry in raw:
        if not isinstance(entry, Mapping):
            continue
        channel_id = str(entry.get("channel_id") or "").strip()
        if not channel_id:
            continue
        channel_name = str(entry.get("channel_name") or "").strip() or channel_id
        channels.append(Channel(channel_id=channel_id, channel_name=channel_name))
    return channels


def resolve_channels(cfg: Mapping[str, Any]) -> list[Channel]:
    channels = _channels(cfg)
    if not channels:
        raise ConfigError("no channels configured; set channels[] or CHANNEL_ID")
    return channels


def resolve_channel(
    cfg: Mapping[str, Any], *, index: int | None = None, name: str | None = None
) -> Channel:
    channels = resolve_channels(cfg)
    if index is not None:
        if index < 0 or index >= len(channels):
            raise ConfigError(f"no channel at index {index} (have {len(channels)})")
        return channels[index]
    if name is not None:
        wanted = name.strip()
        for channel in channels:
            if channel.channel_name == wanted:
                return channel
        raise ConfigError(f"no channel named {wanted!r}")
    return channels[0]


def resolve_post_process(cfg: Mapping[str, Any]) -> PostProcess:
    section = cfg.get("post_process")
    if not isinstance(section, Mapping):
        section = {}

    def _codec(key: str, allowed: set[str]) -> str:
        value = str(section.get(key) or "copy").strip()
        if value not in allowed:
            _LOG.warning("unsupported post_process.%s %r; using copy", key, value)
            return "copy"
        return value

    return PostProcess(
        enabled=bool(section.get("enabled", False)),
        video_codec=_codec("video_codec", VIDEO_CODECS),
        audio_codec=_codec("audio_codec", AUDIO_CODECS),
    )


def resolve_session_settings(cfg: Mapping[str, Any]) -> SessionSettings:
    section = cfg.get("session")
    if not isinstance(section, Mapping):
        section = {}
    defaults = SessionSettings()

    def _number(key: str, default: float, cast=float) -> Any:
        try:
            value = cast(section.get(key, default))
        except (TypeError, ValueError):
            _LOG.warning("invalid session.%s %r; using %s", key, section.get(key), default)
            return default
        return value if value >= 0 else default

    return SessionSettings(
        poll_interval=_number("poll_interval_sec", defaults.poll_interval),
        dedup_window=_number("dedup_window_sec", defaults.dedup_window, int),
        min_duration=_number("min_duration_sec", defaults.min_duration),
        audio_language=str(section.get("audio_language") or defaults.audio_language),
        shift_chapter_boundaries=bool(
            section.get("shift_chapter_boundaries", defaults.shift_chapter_boundaries)
        ),
    )


def resolve_timezone(cfg: Mapping[str, Any]) -> tzinfo:
    name = str(cfg.get("timezone") or "").strip()
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        _LOG.warning("unknown timezone %r; using UTC", name)
        return timezone.utc


def resolve_auth(cfg: Mapping[str, Any]) -> Auth | None:
    section = cfg.get("auth")
    if not isinstance(section, Mapping):
        return None
    return Auth.from_mapping(section)


__all__ = [
    "Channel",
    "ConfigError",
    "PostProcess",
    "SessionSettings",
    "active_config_path",
    "get_cfg",
    "reload_cfg",
    "resolve_auth",
    "resolve_channel",
    "resolve_channels",
    "resolve_post_process",
    "resolve_session_settings",
    "resolve_timezone",
    "search_paths",
]

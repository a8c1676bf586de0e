#!/usr/bin/env python3
"""
liverec daemon: record one (or every) configured channel until stopped.

- Resolves the channel from --index/--name (default: first configured)
- Refuses to start without streamlink and ffmpeg on PATH
- SIGINT/SIGTERM stop the loops; an active session is finalized before exit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import signal
import sys
from pathlib import Path
from typing import Any, Mapping, Optional

from liverec.chapters import ChapterTracker
from liverec.chzzk_api import Auth, ChzzkApiError, ChzzkClient
from liverec.config import (
    Channel,
    ConfigError,
    active_config_path,
    get_cfg,
    resolve_auth,
    resolve_channel,
    resolve_channels,
    resolve_post_process,
    resolve_session_settings,
    resolve_timezone,
    search_paths,
)
from liverec.finalizer import SessionFinalizer
from liverec.process_supervisor import ProcessSupervisor
from liverec.session import SessionManager

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_LOG = logging.getLogger("liverec")


def _quiet_noisy_dependencies(level: int = logging.WARNING) -> None:
    """Tone down chatty third-party loggers."""

    for name in ("aiohttp.access", "aiohttp.client", "asyncio"):
        logging.getLogger(name).setLevel(level)


def check_binaries(cfg: Mapping[str, Any]) -> Optional[str]:
    """Return an error message when a required binary is missing."""

    binaries = cfg.get("binaries") or {}
    for key in ("streamlink", "ffmpeg"):
        binary = str(binaries.get(key) or key)
        if shutil.which(binary) is None:
            return f"{key} binary {binary!r} not found in PATH"
    mkvpropedit = str(binaries.get("mkvpropedit") or "mkvpropedit")
    if shutil.which(mkvpropedit) is None:
        _LOG.warning("%s not found; recordings will be kept without chapters", mkvpropedit)
    return None


def build_manager(
    cfg: Mapping[str, Any],
    channel: Channel,
    client: ChzzkClient,
    *,
    auth: Optional[Auth] = None,
) -> SessionManager:
    binaries = cfg.get("binaries") or {}
    ffmpeg_binary = shutil.which(str(binaries.get("ffmpeg") or "ffmpeg")) or "ffmpeg"
    settings = resolve_session_settings(cfg)
    slave_cfg = cfg.get("slave") or {}

    auth_provider = None
    if slave_cfg.get("enabled") and slave_cfg.get("master_url"):
        master_url = str(slave_cfg["master_url"])

        async def auth_provider() -> Optional[Auth]:
            return await client.fetch_master_auth(master_url)

    return SessionManager(
        client=client,
        channel_id=channel.channel_id,
        save_directory=Path(cfg["paths"]["recordings_dir"]) / channel.channel_name,
        supervisor=ProcessSupervisor(
            streamlink_binary=str(binaries.get("streamlink") or "streamlink"),
            ffmpeg_binary=ffmpeg_binary,
        ),
        finalizer=SessionFinalizer(
            mkvpropedit_binary=str(binaries.get("mkvpropedit") or "mkvpropedit"),
            min_duration=settings.min_duration,
            audio_language=settings.audio_language,
            shift_boundaries=settings.shift_chapter_boundaries,
        ),
        tracker=ChapterTracker(window=settings.dedup_window),
        post_process=resolve_post_process(cfg),
        auth=auth,
        auth_provider=auth_provider,
        poll_interval=settings.poll_interval,
        tz=resolve_timezone(cfg),
    )


def install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows: no loop signal handlers; fall back to the classic hook.
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def _describe_channel(client: ChzzkClient, channel: Channel, auth: Optional[Auth]) -> None:
    try:
        detail = await client.get_live_detail(channel.channel_id, auth)
    except ChzzkApiError as exc:
        _LOG.warning("could not look up channel %s: %s", channel.channel_id, exc)
        display_name = "?"
    else:
        display_name = detail.channel_name or "?"
    _LOG.info("channel_id = %r", channel.channel_id)
    _LOG.info("channel_name = %r / %r", channel.channel_name, display_name)


async def run(
    cfg: Mapping[str, Any],
    channels: list[Channel],
    stop_event: Optional[asyncio.Event] = None,
) -> int:
    if stop_event is None:
        stop_event = asyncio.Event()
        install_stop_handlers(stop_event)

    api_cfg = cfg.get("api") or {}
    slave_cfg = cfg.get("slave") or {}
    async with ChzzkClient(
        str(api_cfg.get("base_url") or "https://api.chzzk.naver.com"),
        timeout=float(api_cfg.get("timeout_sec", 5.0)),
    ) as client:
        auth = resolve_auth(cfg)
        if slave_cfg.get("enabled") and slave_cfg.get("master_url"):
            auth = await client.fetch_master_auth(str(slave_cfg["master_url"]))

        managers = []
        for channel in channels:
            await _describe_channel(client, channel, auth)
            managers.append(build_manager(cfg, channel, client, auth=auth))

        await asyncio.gather(*(manager.run(stop_event) for manager in managers))
    _LOG.info("clean shutdown complete")
    return 0


def _log_settings(cfg: Mapping[str, Any]) -> None:
    post = resolve_post_process(cfg)
    config_path = active_config_path()
    if config_path is None:
        _LOG.info("no config file found; searched %s", ", ".join(str(p) for p in search_paths()))
    else:
        _LOG.info("config = %s", config_path)
    _LOG.info("save_directory = %r", cfg["paths"]["recordings_dir"])
    _LOG.info("post_process.enable = %s", post.enabled)
    _LOG.info("post_process.video_codec = %s", post.video_codec)
    _LOG.info("post_process.audio_codec = %s", post.audio_codec)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Record Chzzk live streams with chapters.")
    select = parser.add_mutually_exclusive_group()
    select.add_argument("--index", type=int, help="Record the channel at this position in channels[].")
    select.add_argument("--name", help="Record the channel with this channel_name.")
    select.add_argument("--all", action="store_true", help="Record every configured channel.")
    parser.add_argument("--log-level", default=None, help="Python logging level (default: INFO).")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = get_cfg()

    level_name = args.log_level or ("DEBUG" if cfg.get("logging", {}).get("dev_mode") else "INFO")
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    _quiet_noisy_dependencies()

    try:
        if args.all:
            channels = resolve_channels(cfg)
        else:
            channels = [resolve_channel(cfg, index=args.index, name=args.name)]
    except ConfigError as exc:
        _LOG.error("Unable to start liverec: %s", exc)
        return 1

    problem = check_binaries(cfg)
    if problem:
        _LOG.error("Unable to start liverec: %s", problem)
        return 1

    _log_settings(cfg)
    try:
        return asyncio.run(run(cfg, channels))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())

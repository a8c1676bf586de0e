#!/usr/bin/env python3
"""
SessionManager: the per-channel recording loop.

States:
  IDLE       no children; each tick asks the API whether the channel is live
  CAPTURING  children running; each tick checks the capture first, then polls
             the live status for chapter changes

A capture exit (or a failed liveness check) finalizes the session and loops
again immediately so a quick restart of the stream is not missed. The stop
event is raced against the tick delay and wins when both are ready.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Awaitable, Callable, Optional

from liverec.chapters import Chapter, ChapterTracker, DecisionKind
from liverec.chzzk_api import Auth, ChzzkApiError, ChzzkClient, LiveDetail, LiveStatus
from liverec.config import PostProcess
from liverec.finalizer import CONTAINER_FILENAME, FinalizeOutcome, MuxError, SessionFinalizer
from liverec.process_supervisor import CapturePoll, ProcessSupervisor, TranscodeOptions
from liverec.time_utils import format_hms

POLL_INTERVAL_SECONDS = 5.0
SESSION_DIR_FORMAT = "%Y-%m-%d_%H-%M-%S"

_LOG = logging.getLogger("session_manager")


class SessionState(enum.Enum):
    IDLE = "idle"
    CAPTURING = "capturing"


@dataclass
class Session:
    directory: Path
    started_at: datetime
    start_instant: float
    chapters: list[Chapter] = field(default_factory=list)
    transcode_returncode: Optional[int] = None

    @property
    def output_path(self) -> Path:
        return self.directory / CONTAINER_FILENAME


class SessionManager:
    def __init__(
        self,
        *,
        client: ChzzkClient,
        channel_id: str,
        save_directory: Path,
        supervisor: ProcessSupervisor,
        finalizer: SessionFinalizer,
        tracker: Optional[ChapterTracker] = None,
        post_process: PostProcess = PostProcess(),
        auth: Optional[Auth] = None,
        auth_provider: Optional[Callable[[], Awaitable[Optional[Auth]]]] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.channel_id = channel_id
        self.save_directory = Path(save_directory)
        self.supervisor = supervisor
        self.finalizer = finalizer
        self.tracker = tracker or ChapterTracker()
        self.post_process = post_process
        self.auth = auth
        self.auth_provider = auth_provider
        self.poll_interval = float(poll_interval)
        self.tz = tz
        self._clock = clock
        self.session: Optional[Session] = None

    @property
    def state(self) -> SessionState:
        return SessionState.CAPTURING if self.session is not None else SessionState.IDLE

    def elapsed(self) -> float:
        if self.session is None:
            return 0.0
        return self._clock() - self.session.start_instant

    async def tick(self) -> bool:
        """Run one iteration; return False when the next one should not wait."""

        if self.auth_provider is not None:
            self.auth = await self.auth_provider()

        if self.session is None:
            await self._poll_idle()
            return True

        poll = self.supervisor.poll_capture()
        if not poll.running:
            self._end_session(poll)
            return False

        self._check_transcoder(self.session)
        await self._poll_capturing(self.session)
        return True

    async def _poll_idle(self) -> None:
        try:
            status = await self.client.get_live_status(self.channel_id, self.auth)
            if not status.is_open:
                return
            detail = await self.client.get_live_detail(self.channel_id, self.auth)
        except ChzzkApiError as exc:
            _LOG.warning("live check failed: %s", exc)
            return

        if detail.adult and detail.playback_url is None:
            _LOG.warning("stream is age-restricted; credentials are required to record it")
            return
        if detail.playback_url is None:
            _LOG.info("channel is live but no HLS playback is offered yet")
            return

        self._start_session(detail)

    def _start_session(self, detail: LiveDetail) -> None:
        started_at = datetime.now(self.tz)
        directory = self.save_directory / started_at.strftime(SESSION_DIR_FORMAT)
        transcode = None
        if self.post_process.enabled:
            transcode = TranscodeOptions(
                video_codec=self.post_process.video_codec,
                audio_codec=self.post_process.audio_codec,
                title=detail.title,
                artist=detail.channel_name,
            )

        try:
            self.supervisor.start(
                detail.playback_url or "",
                directory / CONTAINER_FILENAME,
                transcode,
            )
        except Exception as exc:
            _LOG.error("failed to start capture: %r", exc)
            shutil.rmtree(directory, ignore_errors=True)
            return

        session = Session(
            directory=directory,
            started_at=started_at,
            start_instant=self._clock(),
        )
        session.chapters.append(Chapter.from_status(0, detail.as_status()))
        self.session = session
        _LOG.info(
            "%s - %r Playing %s",
            format_hms(0),
            detail.title,
            detail.category or "unknown",
        )

    def _check_transcoder(self, session: Session) -> None:
        if session.transcode_returncode is not None:
            return
        trc = self.supervisor.poll_transcode()
        if trc is not None:
            session.transcode_returncode = trc
            _LOG.warning(
                "%s - ffmpeg exited early rc=%s; capture keeps running",
                format_hms(self.elapsed()),
                trc,
            )

    async def _poll_capturing(self, session: Session) -> None:
        try:
            status = await self.client.get_live_status(self.channel_id, self.auth)
        except ChzzkApiError as exc:
            _LOG.warning("%s - status poll failed: %s", format_hms(self.elapsed()), exc)
            return

        offset = int(self.elapsed())
        decision = self.tracker.observe(session.chapters, offset, status)
        if decision.changed:
            self._log_chapter(offset, status, decision.kind)

    def _log_chapter(self, offset: int, status: LiveStatus, kind: DecisionKind) -> None:
        label = "category updated" if kind is DecisionKind.REWRITE_CATEGORY else "new chapter"
        _LOG.info(
            "%s - %r Playing %s (%s)",
            format_hms(offset),
            status.title,
            status.category or "unknown",
            label,
        )

    def _end_session(self, poll: CapturePoll) -> None:
        session = self.session
        assert session is not None
        self.session = None
        elapsed = format_hms(self._clock() - session.start_instant)
        if poll.error is not None:
            _LOG.error("%s - capture liveness check failed: %r", elapsed, poll.error)
        else:
            _LOG.info("%s - capture exited rc=%s", elapsed, poll.returncode)
        self.supervisor.release()
        self._finalize(session)

    def _finalize(self, session: Session) -> Optional[FinalizeOutcome]:
        elapsed = format_hms(self._clock() - session.start_instant)
        try:
            outcome = self.finalizer.finalize(session)
        except MuxError as exc:
            _LOG.error("%s - muxer failed, recording kept without chapters: %s", elapsed, exc.output)
            return None
        except OSError as exc:
            _LOG.error("%s - finalization failed: %r", elapsed, exc)
            return None
        if outcome is FinalizeOutcome.CHAPTERED:
            _LOG.info("%s - closed live stream", elapsed)
        return outcome

    def shutdown(self) -> None:
        session = self.session
        self.session = None
        if session is None:
            return
        _LOG.info("%s - received stop signal", format_hms(self._clock() - session.start_instant))
        self.supervisor.terminate_and_wait()
        self._finalize(session)

    async def _wait_tick(self, stop_event: asyncio.Event) -> bool:
        """Sleep one tick unless stopped first; return True when stopping."""

        if stop_event.is_set():
            return True
        stop_task = asyncio.ensure_future(stop_event.wait())
        sleep_task = asyncio.ensure_future(asyncio.sleep(self.poll_interval))
        try:
            await asyncio.wait({stop_task, sleep_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (stop_task, sleep_task):
                if not task.done():
                    task.cancel()
        return stop_event.is_set()

    async def run(self, stop_event: asyncio.Event) -> None:
        try:
            while not stop_event.is_set():
                try:
                    wait = await self.tick()
                except Exception as exc:  # noqa: BLE001 - the loop must survive
                    _LOG.exception("loop error: %r", exc)
                    wait = True
                if not wait:
                    continue
                if await self._wait_tick(stop_event):
                    break
        finally:
            self.shutdown()


__all__ = [
    "POLL_INTERVAL_SECONDS",
    "Session",
    "SessionManager",
    "SessionState",
]

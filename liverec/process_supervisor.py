#!/usr/bin/env python3
"""
ProcessSupervisor: owns the child processes of one recording session.

- streamlink pulls the live HLS stream and either writes the container itself
  or pipes it to stdout
- with post-processing on, ffmpeg reads that pipe and writes the final file
- liveness checks never block; teardown waits, bounded except on shutdown

The capture process is the source of truth for session end. The transcoder is
reaped with a bounded wait and never blocks teardown indefinitely.
"""

from __future__ import annotations

import enum
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from liverec.ffmpeg_io import capture_command, transcode_command

TERMINATE_GRACE_SECONDS = 10.0
TRANSCODE_REAP_SECONDS = 10.0


class SupervisorError(RuntimeError):
    """Raised when children cannot be started or are already owned."""


@dataclass(frozen=True)
class TranscodeOptions:
    video_codec: str = "copy"
    audio_codec: str = "copy"
    title: str = ""
    artist: str = ""


@dataclass
class SpawnedProcesses:
    capture: subprocess.Popen
    transcode: Optional[subprocess.Popen] = None


class CaptureStatus(enum.Enum):
    RUNNING = "running"
    EXITED = "exited"
    ERROR = "error"


@dataclass(frozen=True)
class CapturePoll:
    status: CaptureStatus
    returncode: int | None = None
    error: BaseException | None = None

    @property
    def running(self) -> bool:
        return self.status is CaptureStatus.RUNNING


class ProcessSupervisor:
    def __init__(
        self,
        *,
        streamlink_binary: str = "streamlink",
        ffmpeg_binary: str = "ffmpeg",
        terminate_grace: float = TERMINATE_GRACE_SECONDS,
        transcode_reap_timeout: float = TRANSCODE_REAP_SECONDS,
    ) -> None:
        self.streamlink_binary = streamlink_binary
        self.ffmpeg_binary = ffmpeg_binary
        self.terminate_grace = float(terminate_grace)
        self.transcode_reap_timeout = float(transcode_reap_timeout)
        self._log = logging.getLogger("process_supervisor")
        self._procs: Optional[SpawnedProcesses] = None

    @property
    def active(self) -> bool:
        return self._procs is not None

    def start(
        self,
        stream_url: str,
        output_path: Path,
        transcode: Optional[TranscodeOptions] = None,
    ) -> SpawnedProcesses:
        if self._procs is not None:
            raise SupervisorError("children from a previous session are still owned")

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        if transcode is None:
            cmd = capture_command(
                self.streamlink_binary,
                stream_url,
                self.ffmpeg_binary,
                output_path=output_path,
            )
            self._log.info("Launching streamlink: %s", " ".join(cmd))
            capture = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=None,
                start_new_session=True,
            )
            self._procs = SpawnedProcesses(capture=capture)
            return self._procs

        cmd = capture_command(self.streamlink_binary, stream_url, self.ffmpeg_binary)
        self._log.info("Launching streamlink: %s", " ".join(cmd))
        capture = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=None,
            start_new_session=True,
        )

        ffmpeg_cmd = transcode_command(
            self.ffmpeg_binary,
            output_path,
            video_codec=transcode.video_codec,
            audio_codec=transcode.audio_codec,
            title=transcode.title,
            artist=transcode.artist,
        )
        self._log.info("Launching ffmpeg: %s", " ".join(ffmpeg_cmd))
        try:
            transcoder = subprocess.Popen(
                ffmpeg_cmd,
                stdin=capture.stdout,
                stdout=subprocess.DEVNULL,
                stderr=None,
                start_new_session=True,
            )
        except Exception:
            self._kill_quietly(capture)
            raise
        finally:
            # ffmpeg holds the read end now; our copy would keep the pipe open.
            if capture.stdout is not None:
                capture.stdout.close()

        self._procs = SpawnedProcesses(capture=capture, transcode=transcoder)
        return self._procs

    def poll_capture(self) -> CapturePoll:
        if self._procs is None:
            return CapturePoll(CaptureStatus.ERROR, error=SupervisorError("no capture process"))
        try:
            rc = self._procs.capture.poll()
        except Exception as exc:
            return CapturePoll(CaptureStatus.ERROR, error=exc)
        if rc is None:
            return CapturePoll(CaptureStatus.RUNNING)
        return CapturePoll(CaptureStatus.EXITED, returncode=rc)

    def poll_transcode(self) -> int | None:
        if self._procs is None or self._procs.transcode is None:
            return None
        try:
            return self._procs.transcode.poll()
        except Exception as e:
            self._log.debug("ffmpeg poll error: %r", e)
            return None

    def release(self) -> None:
        """
        Tear down the children after the capture ended or stopped answering.
        - a capture that may still be alive (poll error) is stopped, bounded
        - the transcoder gets the same bounded reap as on shutdown so the
          container trailer is written before anything touches the file
        """

        procs = self._procs
        self._procs = None
        if procs is None:
            return

        try:
            rc = procs.capture.poll()
        except Exception as e:
            self._log.warning("streamlink poll failed during release: %r", e)
            rc = None
        if rc is None:
            try:
                self._stop_capture(procs.capture, bounded=True)
            except Exception as e:
                self._log.error("could not stop streamlink: %r", e)
        self._reap_transcoder(procs.transcode)

    def terminate_and_wait(self) -> int | None:
        """
        Stop the capture and block until it is gone.
        - SIGTERM first so streamlink can close its ffmpeg muxer cleanly.
        - SIGKILL after the grace period, then keep waiting.
        - The transcoder sees EOF on its pipe; give it a bounded window to
          finish writing and leave it alone afterwards.
        """

        procs = self._procs
        self._procs = None
        if procs is None:
            return None

        rc = procs.capture.poll()
        if rc is None:
            rc = self._stop_capture(procs.capture, bounded=False)
        else:
            self._log.info("streamlink already exited rc=%s", rc)

        self._reap_transcoder(procs.transcode)
        return rc

    def _stop_capture(self, capture: subprocess.Popen, *, bounded: bool) -> int | None:
        try:
            capture.terminate()
        except ProcessLookupError:
            pass
        try:
            rc = capture.wait(timeout=self.terminate_grace)
            self._log.info("streamlink terminated with rc=%s", rc)
            return rc
        except subprocess.TimeoutExpired:
            self._log.warning("streamlink did not exit after SIGTERM; sending SIGKILL")
        try:
            capture.kill()
        except ProcessLookupError:
            pass
        if not bounded:
            rc = capture.wait()
            self._log.info("streamlink killed; rc=%s", rc)
            return rc
        try:
            rc = capture.wait(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            self._log.error("streamlink survived SIGKILL; abandoning it")
            return None
        self._log.info("streamlink killed; rc=%s", rc)
        return rc

    def _reap_transcoder(self, transcoder: Optional[subprocess.Popen]) -> None:
        if transcoder is None:
            return
        try:
            trc = transcoder.wait(timeout=self.transcode_reap_timeout)
            self._log.info("ffmpeg exited rc=%s", trc)
        except subprocess.TimeoutExpired:
            self._log.warning(
                "ffmpeg still running %.0fs after capture stopped; leaving it",
                self.transcode_reap_timeout,
            )
        except Exception as e:
            self._log.debug("ffmpeg reap error: %r", e)

    def _kill_quietly(self, proc: subprocess.Popen) -> None:
        try:
            proc.kill()
            proc.wait(timeout=self.terminate_grace)
        except Exception as e:
            self._log.exception("Error killing streamlink after failed ffmpeg launch: %r", e)


__all__ = [
    "CapturePoll",
    "CaptureStatus",
    "ProcessSupervisor",
    "SpawnedProcesses",
    "SupervisorError",
    "TranscodeOptions",
]

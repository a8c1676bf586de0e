"""
Session finalization: drop false starts, embed chapters into the rest.

Chapter file format (mkvmerge "simple chapters"):

    CHAPTER01=00:00:00.000
    CHAPTER01NAME=Intro Playing Talk
    CHAPTER02=00:02:30.000
    CHAPTER02NAME=Ranked Playing League of Legends

Sub-second precision is not tracked, so milliseconds are always ``.000``.
"""

from __future__ import annotations

import enum
import logging
import shutil
import subprocess
import time
from pathlib import Path
from typing import Callable, Iterable, Sequence

from liverec.chapters import Chapter
from liverec.ffmpeg_io import DEFAULT_AUDIO_LANGUAGE, mux_chapters_command
from liverec.time_utils import format_hms, two_digits

MIN_DURATION_SECONDS = 15.0
CONTAINER_FILENAME = "index.mkv"
METADATA_FILENAME = "metadata.txt"
UNKNOWN_CATEGORY = "unknown"


class MuxError(Exception):
    """The muxer exited non-zero; ``output`` holds what it printed."""

    def __init__(self, output: str, returncode: int | None = None) -> None:
        super().__init__(output)
        self.output = output
        self.returncode = returncode


class FinalizeOutcome(enum.Enum):
    DISCARDED = "discarded"
    CHAPTERED = "chaptered"


def _single_line(text: str) -> str:
    return text.replace("\r\n", " ").replace("\r", " ").replace("\n", " ")


def chapter_name(chapter: Chapter) -> str:
    """One-line chapter label; line breaks would start a new record."""

    category = (chapter.category or UNKNOWN_CATEGORY).replace("_", " ")
    return _single_line(f"{chapter.title} Playing {category}")


def chapter_records(
    chapters: Iterable[Chapter], *, shift_boundaries: bool = True
) -> list[tuple[int, str]]:
    """Return ``(start_seconds, name)`` pairs in chapter order.

    With ``shift_boundaries`` each record starts where the previous detection
    happened (the first at zero); otherwise it starts at its own detection.
    """

    ordered = sorted(chapters, key=lambda chapter: chapter.offset)
    records: list[tuple[int, str]] = []
    previous: Chapter | None = None
    for chapter in ordered:
        if shift_boundaries:
            start = previous.offset if previous is not None else 0
        else:
            start = chapter.offset
        records.append((int(start), chapter_name(chapter)))
        previous = chapter
    return records


def render_chapter_file(
    chapters: Iterable[Chapter], *, shift_boundaries: bool = True
) -> str:
    lines: list[str] = []
    for number, (start, name) in enumerate(
        chapter_records(chapters, shift_boundaries=shift_boundaries), start=1
    ):
        index = two_digits(number)
        lines.append(f"CHAPTER{index}={format_hms(start)}.000")
        lines.append(f"CHAPTER{index}NAME={name}")
    return "".join(f"{line}\n" for line in lines)


class SessionFinalizer:
    def __init__(
        self,
        *,
        mkvpropedit_binary: str = "mkvpropedit",
        min_duration: float = MIN_DURATION_SECONDS,
        audio_language: str = DEFAULT_AUDIO_LANGUAGE,
        shift_boundaries: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.mkvpropedit_binary = mkvpropedit_binary
        self.min_duration = float(min_duration)
        self.audio_language = audio_language
        self.shift_boundaries = shift_boundaries
        self._clock = clock
        self._log = logging.getLogger("finalizer")

    def finalize(self, session) -> FinalizeOutcome:
        elapsed = self._clock() - session.start_instant
        directory = Path(session.directory)

        if elapsed < self.min_duration:
            if directory.exists():
                shutil.rmtree(directory)
            self._log.info(
                "%s - removed this live stream, because duration less than %.0f secs",
                format_hms(elapsed),
                self.min_duration,
            )
            return FinalizeOutcome.DISCARDED

        self.embed_chapters(directory, session.chapters)
        return FinalizeOutcome.CHAPTERED

    def embed_chapters(self, directory: Path, chapters: Sequence[Chapter]) -> None:
        metadata_file = directory / METADATA_FILENAME
        metadata_file.write_text(
            render_chapter_file(chapters, shift_boundaries=self.shift_boundaries),
            encoding="utf-8",
        )

        cmd = mux_chapters_command(
            self.mkvpropedit_binary,
            directory / CONTAINER_FILENAME,
            metadata_file,
            audio_language=self.audio_language,
        )
        self._log.debug("Running muxer: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=False,
            )
        finally:
            try:
                metadata_file.unlink(missing_ok=True)
            except OSError as e:
                self._log.warning("failed to remove %s: %r", metadata_file, e)

        if result.returncode != 0:
            output = (result.stdout or b"").decode("utf-8", errors="replace").strip()
            raise MuxError(output or "unknown error", result.returncode)


__all__ = [
    "FinalizeOutcome",
    "MuxError",
    "SessionFinalizer",
    "chapter_name",
    "chapter_records",
    "render_chapter_file",
]

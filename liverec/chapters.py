"""
Chapter bookkeeping for a recording session.

The live-status endpoint is polled every few seconds and is noisy: titles
flicker back and forth and categories lag behind title edits. The tracker
folds those polls into a short list of chapters:

- a closed stream never produces a chapter (stream end is detected from the
  capture process, not from here);
- a title already seen within the trailing window is not repeated; if the
  category moved on in the meantime, the oldest matching entry is corrected
  in place instead;
- anything else that differs from the latest entry starts a new chapter.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import MutableSequence, Sequence

from liverec.chzzk_api import LiveStatus

DEDUP_WINDOW_SECONDS = 60


@dataclass
class Chapter:
    offset: int
    title: str
    category: str | None = None

    @classmethod
    def from_status(cls, offset: int, status: LiveStatus) -> "Chapter":
        return cls(offset=int(offset), title=status.title, category=status.category)


class DecisionKind(enum.Enum):
    IGNORE = "ignore"
    APPEND = "append"
    REWRITE_CATEGORY = "rewrite_category"


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    index: int | None = None

    @property
    def changed(self) -> bool:
        return self.kind is not DecisionKind.IGNORE


IGNORE = Decision(DecisionKind.IGNORE)
APPEND = Decision(DecisionKind.APPEND)


class ChapterTracker:
    def __init__(self, window: int = DEDUP_WINDOW_SECONDS) -> None:
        self.window = int(window)

    def consider(
        self, history: Sequence[Chapter], offset: int, status: LiveStatus
    ) -> Decision:
        if not status.is_open:
            return IGNORE
        if not history:
            return APPEND

        oldest_index: int | None = None
        for index, entry in enumerate(history):
            if offset - entry.offset > self.window:
                continue
            if entry.title != status.title:
                continue
            if oldest_index is None or entry.offset < history[oldest_index].offset:
                oldest_index = index

        if oldest_index is not None:
            if history[oldest_index].category != status.category:
                return Decision(DecisionKind.REWRITE_CATEGORY, oldest_index)
            return IGNORE

        latest = history[-1]
        if latest.title != status.title or latest.category != status.category:
            return APPEND
        return IGNORE

    @staticmethod
    def apply(
        history: MutableSequence[Chapter],
        decision: Decision,
        offset: int,
        status: LiveStatus,
    ) -> None:
        if decision.kind is DecisionKind.APPEND:
            history.append(Chapter.from_status(offset, status))
        elif decision.kind is DecisionKind.REWRITE_CATEGORY:
            assert decision.index is not None
            history[decision.index].category = status.category

    def observe(
        self, history: MutableSequence[Chapter], offset: int, status: LiveStatus
    ) -> Decision:
        decision = self.consider(history, offset, status)
        self.apply(history, decision, offset, status)
        return decision


__all__ = [
    "APPEND",
    "Chapter",
    "ChapterTracker",
    "DEDUP_WINDOW_SECONDS",
    "Decision",
    "DecisionKind",
    "IGNORE",
]

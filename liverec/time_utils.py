"""Elapsed-time formatting shared by the session loop and the chapter writer."""

from __future__ import annotations


def split_hms(seconds: float) -> tuple[int, int, int]:
    """Split elapsed seconds into whole (hours, minutes, seconds)."""

    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return hours, minutes, secs


def two_digits(value: int) -> str:
    return f"{int(value):02d}"


def format_hms(seconds: float, separator: str = ":") -> str:
    return separator.join(two_digits(part) for part in split_hms(seconds))


__all__ = ["format_hms", "split_hms", "two_digits"]

"""Shared helpers for building streamlink, ffmpeg and mkvpropedit command lines."""

from __future__ import annotations

from pathlib import Path

CAPTURE_QUALITY = "best"
CAPTURE_CONTAINER = "matroska"
DEFAULT_AUDIO_LANGUAGE = "ko"

# ffmpeg's metadata syntax treats these as special; newlines cannot be escaped.
_METADATA_ESCAPES = (
    ("\\", "\\\\"),
    ("=", "\\="),
    (";", "\\;"),
    ("#", "\\#"),
    ("\n", " "),
)


def escape_metadata_value(value: str) -> str:
    """Escape a value for ``-metadata key=value``.

    The backslash is handled first so the escapes added for the other
    characters are not doubled.
    """

    escaped = value
    for needle, replacement in _METADATA_ESCAPES:
        escaped = escaped.replace(needle, replacement)
    return escaped


def capture_command(
    streamlink_binary: str,
    stream_url: str,
    ffmpeg_binary: str,
    *,
    output_path: Path | None = None,
) -> list[str]:
    """Return the streamlink command line.

    With ``output_path`` streamlink writes the container itself; without it the
    stream goes to stdout for a downstream transcoder.
    """

    cmd = [
        streamlink_binary,
        stream_url,
        CAPTURE_QUALITY,
        "--loglevel",
        "info",
        "--ffmpeg-ffmpeg",
        ffmpeg_binary.strip(),
        "--ffmpeg-copyts",
        "--ffmpeg-fout",
        CAPTURE_CONTAINER,
    ]
    if output_path is None:
        cmd.append("--stdout")
    else:
        cmd.extend(["-o", str(output_path)])
    return cmd


def transcode_command(
    ffmpeg_binary: str,
    output_path: Path,
    *,
    video_codec: str,
    audio_codec: str,
    title: str,
    artist: str,
) -> list[str]:
    """Return the ffmpeg command that re-encodes a piped capture into ``output_path``."""

    return [
        ffmpeg_binary.strip(),
        "-hide_banner",
        "-nostats",
        "-loglevel",
        "info",
        "-i",
        "pipe:",
        "-c:v",
        video_codec,
        "-c:a",
        audio_codec,
        "-map_metadata",
        "0",
        "-metadata",
        f"title={escape_metadata_value(title)}",
        "-metadata",
        f"artist={escape_metadata_value(artist)}",
        str(output_path),
    ]


def mux_chapters_command(
    mkvpropedit_binary: str,
    container_path: Path,
    chapters_path: Path,
    *,
    audio_language: str = DEFAULT_AUDIO_LANGUAGE,
) -> list[str]:
    return [
        mkvpropedit_binary,
        str(container_path),
        "--edit",
        "track:a1",
        "--set",
        f"language={audio_language}",
        "--chapters",
        str(chapters_path),
    ]

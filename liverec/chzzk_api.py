"""Minimal async client for the Chzzk live endpoints the recorder polls."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

import aiohttp

DEFAULT_BASE_URL = "https://api.chzzk.naver.com"
DEFAULT_TIMEOUT_SECONDS = 5.0
# The API rejects requests without a browser-like agent.
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
HLS_MEDIA_ID = "HLS"

_LOG = logging.getLogger("chzzk_api")


class ChzzkApiError(Exception):
    """Raised when a live endpoint cannot be reached or returns garbage."""


class LiveStatusType(enum.Enum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"

    @classmethod
    def parse(cls, value: Any) -> "LiveStatusType":
        if isinstance(value, str) and value.strip().upper() == cls.OPEN.value:
            return cls.OPEN
        return cls.CLOSE


@dataclass(frozen=True)
class Auth:
    nid_aut: str = ""
    nid_ses: str = ""

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "Auth | None":
        if not isinstance(payload, Mapping):
            return None
        aut = payload.get("nid_aut", payload.get("NID_AUT"))
        ses = payload.get("nid_ses", payload.get("NID_SES"))
        aut = str(aut).strip() if aut else ""
        ses = str(ses).strip() if ses else ""
        if not aut and not ses:
            return None
        return cls(nid_aut=aut, nid_ses=ses)

    def cookie_header(self) -> str:
        parts = []
        if self.nid_aut:
            parts.append(f"NID_AUT={self.nid_aut}")
        if self.nid_ses:
            parts.append(f"NID_SES={self.nid_ses}")
        return "; ".join(parts)


@dataclass(frozen=True)
class LiveStatus:
    status: LiveStatusType
    title: str
    category: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status is LiveStatusType.OPEN

    @classmethod
    def from_content(cls, content: Mapping[str, Any]) -> "LiveStatus":
        return cls(
            status=LiveStatusType.parse(content.get("status")),
            title=str(content.get("liveTitle") or ""),
            category=_optional_str(content.get("liveCategory")),
        )


@dataclass(frozen=True)
class LiveDetail:
    status: LiveStatusType
    title: str
    category: str | None
    channel_id: str
    channel_name: str
    adult: bool = False
    playback_url: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status is LiveStatusType.OPEN

    def as_status(self) -> LiveStatus:
        return LiveStatus(status=self.status, title=self.title, category=self.category)

    @classmethod
    def from_content(cls, content: Mapping[str, Any]) -> "LiveDetail":
        channel = content.get("channel")
        if not isinstance(channel, Mapping):
            channel = {}
        return cls(
            status=LiveStatusType.parse(content.get("status")),
            title=str(content.get("liveTitle") or ""),
            category=_optional_str(content.get("liveCategory")),
            channel_id=str(channel.get("channelId") or ""),
            channel_name=str(channel.get("channelName") or ""),
            adult=bool(content.get("adult", False)),
            playback_url=_hls_path(content.get("livePlaybackJson")),
        )


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text else None


def _hls_path(raw: Any) -> str | None:
    """Pull the HLS media path out of the embedded playback JSON."""

    if not raw:
        return None
    if isinstance(raw, str):
        try:
            playback = json.loads(raw)
        except json.JSONDecodeError:
            return None
    else:
        playback = raw
    if not isinstance(playback, Mapping):
        return None
    media = playback.get("media")
    if not isinstance(media, list):
        return None
    for entry in media:
        if isinstance(entry, Mapping) and entry.get("mediaId") == HLS_MEDIA_ID:
            path = entry.get("path")
            if isinstance(path, str) and path:
                return path
    return None


class ChzzkClient:
    """Thin wrapper around an aiohttp session.

    Every request is bounded by ``timeout``; network failures, non-200
    responses and malformed envelopes all surface as ``ChzzkApiError`` so the
    session loop has a single transient error type to catch.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=max(0.1, float(timeout)))
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "ChzzkClient":
        self._ensure_session()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"User-Agent": DEFAULT_USER_AGENT},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get_json(self, url: str, auth: Auth | None = None) -> Any:
        session = self._ensure_session()
        headers = {}
        if auth is not None and auth.cookie_header():
            headers["Cookie"] = auth.cookie_header()
        try:
            async with session.get(url, headers=headers, timeout=self.timeout) as resp:
                if resp.status != 200:
                    raise ChzzkApiError(f"GET {url} returned HTTP {resp.status}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise ChzzkApiError(f"GET {url} failed: {exc!r}") from exc

    async def _get_content(self, path: str, auth: Auth | None) -> Mapping[str, Any]:
        payload = await self._get_json(f"{self.base_url}{path}", auth)
        if not isinstance(payload, Mapping):
            raise ChzzkApiError(f"unexpected payload from {path}")
        code = payload.get("code")
        content = payload.get("content")
        if code not in (None, 200) or not isinstance(content, Mapping):
            raise ChzzkApiError(
                f"{path} returned code={code!r} message={payload.get('message')!r}"
            )
        return content

    async def get_live_status(self, channel_id: str, auth: Auth | None = None) -> LiveStatus:
        content = await self._get_content(
            f"/polling/v2/channels/{channel_id}/live-status", auth
        )
        return LiveStatus.from_content(content)

    async def get_live_detail(self, channel_id: str, auth: Auth | None = None) -> LiveDetail:
        content = await self._get_content(
            f"/service/v2/channels/{channel_id}/live-detail", auth
        )
        return LiveDetail.from_content(content)

    async def fetch_master_auth(self, master_url: str) -> Auth | None:
        """Borrow credentials from a master instance; any failure means anonymous."""

        url = f"{master_url.rstrip('/')}/chzzk-auth"
        try:
            payload = await self._get_json(url)
        except ChzzkApiError as exc:
            _LOG.warning("master auth unavailable: %s", exc)
            return None
        return Auth.from_mapping(payload)


__all__ = [
    "Auth",
    "ChzzkApiError",
    "ChzzkClient",
    "LiveDetail",
    "LiveStatus",
    "LiveStatusType",
]

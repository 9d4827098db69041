"""Adapters around the external collaborators.

* metadata: yt-dlp (full encoding list) or the public oEmbed endpoint
  (title/author only)
* bytes: :class:`HttpDownloader`, an httpx client fetching encoding locators

Raw yt-dlp / httpx exceptions are translated to :mod:`tubeconv.errors`
types here and never escape.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx
import yt_dlp

from tubeconv.config import Settings
from tubeconv.errors import Forbidden, NotFound, UpstreamFailure
from tubeconv.models import EncodingDescriptor, VideoDetails

logger = logging.getLogger(__name__)

WATCH_URL = "https://www.youtube.com/watch?v={video_id}"
OEMBED_URL = "https://www.youtube.com/oembed"
THUMBNAIL_URL = "https://img.youtube.com/vi/{video_id}/maxresdefault.jpg"


class MetadataProvider(Protocol):
    name: str

    async def fetch(self, video_id: str) -> VideoDetails:
        ...  # pragma: no cover


class RemoteStream(Protocol):
    content_length: Optional[int]

    def iter_bytes(self) -> AsyncIterator[bytes]:
        ...  # pragma: no cover

    async def aclose(self) -> None:
        ...  # pragma: no cover


class Downloader(Protocol):
    async def open(self, encoding: EncodingDescriptor) -> RemoteStream:
        ...  # pragma: no cover

    async def fetch_to(self, encoding: EncodingDescriptor, path: str) -> None:
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# yt-dlp
# ---------------------------------------------------------------------------

_FORBIDDEN_SIGNALS = (
    "private video",
    "video is private",
    "sign in to confirm your age",
    "age-restricted",
    "inappropriate for some users",
    "members-only",
    "sign in",
)
_NOT_FOUND_SIGNALS = (
    "video unavailable",
    "has been removed",
    "no longer available",
    "does not exist",
    "account terminated",
    "http error 404",
    "not available",
)


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_encoding(raw: Dict[str, Any]) -> Optional[EncodingDescriptor]:
    """Convert one yt-dlp format dict; ``None`` for entries we cannot fetch."""
    locator = raw.get("url")
    if not locator or raw.get("protocol") in ("m3u8", "m3u8_native", "http_dash_segments", "mhtml"):
        return None
    vcodec = raw.get("vcodec") or "none"
    acodec = raw.get("acodec") or "none"
    has_video = vcodec != "none"
    has_audio = acodec != "none"
    if not has_video and not has_audio:
        return None
    headers = raw.get("http_headers") or {}
    downloader_options = raw.get("downloader_options") or {}
    return EncodingDescriptor(
        format_id=str(raw.get("format_id", "")),
        container=str(raw.get("ext") or ""),
        has_audio=has_audio,
        has_video=has_video,
        locator=str(locator),
        height=_optional_int(raw.get("height")) if has_video else None,
        audio_bitrate=_optional_float(raw.get("abr")) if has_audio else None,
        # filesize_approx is an estimate and is never used for framing.
        filesize=_optional_int(raw.get("filesize")),
        http_headers=tuple(sorted((str(k), str(v)) for k, v in headers.items())),
        range_chunk_size=_optional_int(downloader_options.get("http_chunk_size")) or None,
    )


def parse_info(video_id: str, info: Dict[str, Any]) -> VideoDetails:
    encodings: List[EncodingDescriptor] = []
    for raw in info.get("formats") or []:
        if isinstance(raw, dict):
            parsed = parse_encoding(raw)
            if parsed is not None:
                encodings.append(parsed)
    return VideoDetails(
        video_id=str(info.get("id") or video_id),
        title=str(info.get("title") or "Unknown"),
        author=str(info.get("uploader") or info.get("channel") or "Unknown"),
        duration=_optional_int(info.get("duration")) or 0,
        thumbnail=str(info.get("thumbnail") or THUMBNAIL_URL.format(video_id=video_id)),
        view_count=_optional_int(info.get("view_count")) or 0,
        encodings=tuple(encodings),
    )


def map_ytdlp_error(exc: Exception) -> Exception:
    """Translate a yt-dlp ``DownloadError`` message into our error type."""
    message = str(exc).lower()
    if any(signal in message for signal in _FORBIDDEN_SIGNALS):
        return Forbidden(detail=str(exc))
    if any(signal in message for signal in _NOT_FOUND_SIGNALS):
        return NotFound(detail=str(exc))
    return UpstreamFailure(detail=str(exc))


class YtDlpMetadataProvider:
    """Metadata and stream locators through the yt-dlp Python API."""

    name = "ytdlp"

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def _build_opts(self) -> Dict[str, Any]:
        return {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
            "http_headers": self._settings.http_headers,
        }

    def _extract(self, video_id: str) -> Dict[str, Any]:
        try:
            with yt_dlp.YoutubeDL(self._build_opts()) as ydl:
                info = ydl.extract_info(WATCH_URL.format(video_id=video_id), download=False)
        except yt_dlp.utils.DownloadError as exc:
            raise map_ytdlp_error(exc) from exc
        except Exception as exc:
            raise UpstreamFailure(detail=f"yt-dlp: {exc}") from exc
        if not isinstance(info, dict):
            raise UpstreamFailure(detail="yt-dlp returned no metadata")
        return dict(info)

    async def fetch(self, video_id: str) -> VideoDetails:
        info = await asyncio.to_thread(self._extract, video_id)
        details = parse_info(video_id, info)
        logger.info("Fetched %s: %d usable formats", video_id, len(details.encodings))
        return details


# ---------------------------------------------------------------------------
# oEmbed
# ---------------------------------------------------------------------------

class OEmbedMetadataProvider:
    """Title and author from the public oEmbed endpoint; no encodings."""

    name = "oembed"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = settings
        self._client = client

    async def _get(self, params: Dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(OEMBED_URL, params=params)
        async with httpx.AsyncClient(timeout=self._settings.http_timeout, headers=self._settings.http_headers) as client:
            return await client.get(OEMBED_URL, params=params)

    async def fetch(self, video_id: str) -> VideoDetails:
        params = {"url": WATCH_URL.format(video_id=video_id), "format": "json"}
        try:
            response = await self._get(params)
        except httpx.HTTPError as exc:
            raise UpstreamFailure(detail=f"oEmbed request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise Forbidden()
        if response.status_code == 404:
            raise NotFound()
        if response.is_error:
            raise UpstreamFailure(detail=f"oEmbed API error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamFailure(detail="oEmbed returned invalid JSON") from exc
        return VideoDetails(
            video_id=video_id,
            title=data.get("title") or "Unknown",
            author=data.get("author_name") or "Unknown",
            thumbnail=THUMBNAIL_URL.format(video_id=video_id),
        )


def build_metadata_provider(settings: Settings) -> MetadataProvider:
    if settings.metadata_provider == "oembed":
        return OEmbedMetadataProvider(settings)
    return YtDlpMetadataProvider(settings)


# ---------------------------------------------------------------------------
# Byte fetching
# ---------------------------------------------------------------------------

_CONTENT_RANGE_RE = re.compile(r"bytes\s+\d+-\d+/(\d+|\*)", re.IGNORECASE)


def _is_encoded(response: httpx.Response) -> bool:
    return response.headers.get("content-encoding", "identity").strip().lower() != "identity"


def _exact_length(response: httpx.Response) -> Optional[int]:
    """Length of the body as yielded to us, or ``None`` if it is not known exactly."""
    if _is_encoded(response):
        # aiter_bytes() decodes, so the wire length would be wrong.
        return None
    return _optional_int(response.headers.get("content-length"))


def _range_total(response: httpx.Response) -> Optional[int]:
    match = _CONTENT_RANGE_RE.match(response.headers.get("content-range", ""))
    if match is None or match.group(1) == "*":
        return None
    return int(match.group(1))


def _range_headers(encoding: EncodingDescriptor, start: int, span: int) -> Dict[str, str]:
    headers = dict(encoding.http_headers)
    headers["Range"] = f"bytes={start}-{start + span - 1}"
    headers["Accept-Encoding"] = "identity"
    return headers


class HttpStream:
    """An open upstream response; the status has already been checked.

    If the encoding carries a ``range_chunk_size`` and the server answered
    the first Range request with 206, the rest of the body is pulled with
    further Range requests of that size.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        response: httpx.Response,
        chunk_size: int,
        encoding: Optional[EncodingDescriptor] = None,
    ) -> None:
        self._client = client
        self._response = response
        self._chunk_size = chunk_size
        self._encoding = encoding
        self._span = encoding.range_chunk_size if encoding is not None and response.status_code == 206 else None
        if self._span:
            self._total = _range_total(response)
            self.content_length = self._total
        else:
            self._total = None
            self.content_length = _exact_length(response)

    async def _next_range(self, start: int) -> httpx.Response:
        encoding = self._encoding
        request = self._client.build_request("GET", encoding.locator, headers=_range_headers(encoding, start, self._span))
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise UpstreamFailure(detail=f"fetch {encoding.format_id} at {start}: {exc}") from exc
        if response.status_code != 206:
            await response.aclose()
            raise UpstreamFailure(detail=f"fetch {encoding.format_id} at {start}: HTTP {response.status_code}")
        return response

    def _finished(self, position: int, received: int) -> bool:
        if not self._span or received == 0:
            return True
        if self._total is not None:
            return position >= self._total
        return received < self._span

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        position = 0
        while True:
            received = 0
            async for chunk in self._response.aiter_bytes(self._chunk_size):
                received += len(chunk)
                yield chunk
            position += received
            if self._finished(position, received):
                return
            await self._response.aclose()
            self._response = await self._next_range(position)

    async def aclose(self) -> None:
        await self._response.aclose()
        await self._client.aclose()


class HttpDownloader:
    """Fetches encoding locators with httpx."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._settings = settings
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.http_timeout,
            follow_redirects=True,
            headers=self._settings.http_headers,
            transport=self._transport,
        )

    async def open(self, encoding: EncodingDescriptor) -> HttpStream:
        client = self._client()
        if encoding.range_chunk_size:
            headers = _range_headers(encoding, 0, encoding.range_chunk_size)
        else:
            headers = dict(encoding.http_headers)
        try:
            request = client.build_request("GET", encoding.locator, headers=headers)
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            raise UpstreamFailure(detail=f"fetch {encoding.format_id}: {exc}") from exc
        if response.is_error or (response.status_code == 206 and _is_encoded(response)):
            await response.aclose()
            await client.aclose()
            raise UpstreamFailure(detail=f"fetch {encoding.format_id}: HTTP {response.status_code}")
        return HttpStream(client, response, self._settings.chunk_size, encoding)

    async def fetch_to(self, encoding: EncodingDescriptor, path: str) -> None:
        stream = await self.open(encoding)
        try:
            with open(path, "wb") as handle:
                async for chunk in stream.iter_bytes():
                    await asyncio.to_thread(handle.write, chunk)
        except httpx.HTTPError as exc:
            raise UpstreamFailure(detail=f"fetch {encoding.format_id}: {exc}") from exc
        finally:
            await stream.aclose()

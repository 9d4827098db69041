"""Request pipeline: id -> metadata -> selection -> (stage -> mux) -> stream.

:class:`ConvertPipeline` receives its collaborators through the
constructor so each stage can be swapped, e.g. an oEmbed provider or
in-memory fakes in tests.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from tubeconv.config import Settings
from tubeconv.errors import MuxFailure, NoMatchingEncoding
from tubeconv.formats import (
    extension_for,
    fallback_combined,
    media_type_for,
    sanitize_title,
    select_encodings,
)
from tubeconv.models import EncodingDescriptor, MergeSelection, SelectionRequest, VideoDetails
from tubeconv.muxer import FfmpegMuxer
from tubeconv.providers import Downloader, MetadataProvider
from tubeconv.services import converter_services
from tubeconv.staging import StagingArea, stage_pair
from tubeconv.video_id import require_video_id

logger = logging.getLogger(__name__)

CloseHook = Callable[[], Awaitable[None]]


class MediaStream:
    """Response body plus the headers needed to send it.

    ``aclose()`` releases whatever backs the body (upstream connection or
    staged files). It runs when the body is exhausted or aborted and is
    safe to call again from a response background task.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        media_type: str,
        filename: str,
        content_length: Optional[int] = None,
        on_close: Optional[CloseHook] = None,
    ) -> None:
        self._chunks = chunks
        self.media_type = media_type
        self.filename = filename
        self.content_length = content_length
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def body(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._chunks:
                yield chunk
        except Exception:
            # Headers are already out; all we can do is log and abort.
            logger.exception("Stream of %s failed mid-transfer", self.filename)
            raise
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            try:
                await self._on_close()
            except Exception:
                logger.exception("Cleanup for %s failed", self.filename)


async def iter_file(path: str, chunk_size: int) -> AsyncIterator[bytes]:
    with open(path, "rb") as handle:
        while True:
            chunk = await asyncio.to_thread(handle.read, chunk_size)
            if not chunk:
                break
            yield chunk


class ConvertPipeline:
    def __init__(
        self,
        settings: Settings,
        provider: MetadataProvider,
        downloader: Downloader,
        muxer: Optional[FfmpegMuxer] = None,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.downloader = downloader
        self.muxer = muxer or FfmpegMuxer.from_settings(settings)

    async def info(self, url: Optional[str]) -> VideoDetails:
        video_id = require_video_id(url)
        logger.info("Fetching info for video: %s", video_id)
        return await self.provider.fetch(video_id)

    async def convert(self, url: Optional[str], output_format: Optional[str], quality: Any = None) -> MediaStream:
        """Resolve ``url`` to a stream of the best matching media."""
        video_id = require_video_id(url)
        request = SelectionRequest.parse(output_format, quality)
        logger.info("Processing %s as %s (ceiling=%s)", video_id, request.kind.value, request.ceiling)

        details = await self.provider.fetch(video_id)
        selection = select_encodings(details.encodings, request)
        if isinstance(selection, MergeSelection):
            return await self._merged(details, request, selection)
        return await self._single(details, selection.encoding)

    async def link(self, url: Optional[str], output_format: Optional[str], quality: Any = None) -> Dict[str, Any]:
        """Direct locator of the best single-stream encoding."""
        video_id = require_video_id(url)
        request = SelectionRequest.parse(output_format, quality)
        details = await self.provider.fetch(video_id)
        encoding = fallback_combined(details.encodings, request)
        if encoding is None:
            raise NoMatchingEncoding()
        return {
            "success": True,
            "downloadUrl": encoding.locator,
            "filename": sanitize_title(details.title, extension_for(encoding)),
        }

    def services(self, url: Optional[str], output_format: Optional[str]) -> Dict[str, Any]:
        video_id = require_video_id(url)
        request = SelectionRequest.parse(output_format)
        return {
            "success": True,
            "videoId": video_id,
            "format": request.kind.value,
            "services": converter_services(video_id, request.kind),
            "message": "Choose a converter service below",
        }

    async def _single(self, details: VideoDetails, encoding: EncodingDescriptor) -> MediaStream:
        # Opened before returning so upstream errors still become JSON errors.
        upstream = await self.downloader.open(encoding)
        return MediaStream(
            upstream.iter_bytes(),
            media_type=media_type_for(encoding),
            filename=sanitize_title(details.title, extension_for(encoding)),
            # Only an exact length may frame the response; otherwise it is chunked.
            content_length=upstream.content_length,
            on_close=upstream.aclose,
        )

    async def _merged(self, details: VideoDetails, request: SelectionRequest, selection: MergeSelection) -> MediaStream:
        area = StagingArea(self.settings.temp_dir, details.video_id)
        try:
            video, audio = await stage_pair(self.downloader, selection, area)
            output = area.path("output", "mp4")
            await self.muxer.merge(video.path, audio.path, output)
            size = os.path.getsize(output)
        except MuxFailure as exc:
            area.cleanup()
            fallback = fallback_combined(details.encodings, request)
            if fallback is None:
                logger.error("Merge failed for %s with no fallback: %s", details.video_id, exc)
                raise
            logger.warning("Merge failed for %s, falling back to %s: %s", details.video_id, fallback.format_id, exc)
            return await self._single(details, fallback)
        except BaseException:
            area.cleanup()
            raise

        async def release() -> None:
            area.cleanup()

        return MediaStream(
            iter_file(output, self.settings.chunk_size),
            media_type="video/mp4",
            filename=sanitize_title(details.title, "mp4"),
            content_length=size,
            on_close=release,
        )

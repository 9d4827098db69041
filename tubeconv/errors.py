"""Error hierarchy shared by the pipeline and the HTTP layer.

Every failure that reaches a route handler is a :class:`ConverterError`
carrying the HTTP status it maps to. Adapters around yt-dlp, httpx and
ffmpeg translate their own exceptions into these types.
"""
from __future__ import annotations

from typing import Optional


class ConverterError(Exception):
    """Base error; ``message`` is safe to show to the client."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None) -> None:
        self.message = message or self.default_message
        # Server-side only, never sent to the client.
        self.detail = detail
        super().__init__(self.message if detail is None else f"{self.message}: {detail}")


class InvalidInput(ConverterError):
    status_code = 400
    default_message = "Invalid request"


class NotFound(ConverterError):
    status_code = 404
    default_message = "Video not found"


class Forbidden(ConverterError):
    status_code = 403
    default_message = "This video is private or restricted"


class MethodNotAllowed(ConverterError):
    status_code = 405
    default_message = "Method not allowed"


class UpstreamFailure(ConverterError):
    """Provider, download or remux failure. Clients only see the generic message."""

    status_code = 500
    default_message = "Failed to process. Please try again."


class NoMatchingEncoding(UpstreamFailure):
    default_message = "No matching format available for this video"


class StagingFailure(UpstreamFailure):
    pass


class MuxFailure(UpstreamFailure):
    pass

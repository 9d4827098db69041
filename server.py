"""FastAPI backend for tubeconv.

This service exposes two endpoints:
- POST /api/info    : returns metadata for a provided video URL
- POST /api/convert : streams the selected audio/video (or, depending on
                      CONVERT_MODE, returns a direct link or converter links)

Run with:
    uvicorn server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import logging
import subprocess
from typing import Any, Dict, Optional, Union

import yt_dlp
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from tubeconv import __version__
from tubeconv.config import Settings, configure_logging
from tubeconv.errors import ConverterError, MethodNotAllowed, UpstreamFailure
from tubeconv.muxer import FfmpegMuxer
from tubeconv.pipeline import ConvertPipeline
from tubeconv.providers import Downloader, HttpDownloader, MetadataProvider, build_metadata_provider

logger = logging.getLogger("tubeconv.server")

router = APIRouter()


class InfoBody(BaseModel):
    url: Optional[str] = None


class ConvertBody(InfoBody):
    format: Optional[str] = "mp3"
    quality: Optional[Union[int, str]] = None


class EmptyPreflightCORSMiddleware(CORSMiddleware):
    """CORSMiddleware whose successful preflight answer has no body."""

    def preflight_response(self, request_headers) -> Response:
        response = super().preflight_response(request_headers)
        if response.status_code != 200:
            return response
        headers = {
            key: value
            for key, value in response.headers.items()
            if key not in ("content-length", "content-type")
        }
        return Response(status_code=200, headers=headers)


def _pipeline(request: Request) -> ConvertPipeline:
    return request.app.state.pipeline


def _ffmpeg_version(ffmpeg_path: str) -> Optional[str]:
    try:
        proc = subprocess.run([ffmpeg_path, "-version"], capture_output=True, text=True, timeout=2)
    except FileNotFoundError:
        return None
    except (OSError, subprocess.SubprocessError):
        return "ffmpeg check failed"
    if proc.returncode == 0 and proc.stdout:
        return proc.stdout.splitlines()[0]
    return None


@router.get("/")
async def root() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/api/health")
async def healthcheck(request: Request) -> Dict[str, Any]:
    """Return service readiness and tool versions."""
    settings: Settings = request.app.state.settings
    return {
        "status": "ok",
        "version": __version__,
        "yt_dlp": getattr(yt_dlp, "__version__", None),
        "ffmpeg": _ffmpeg_version(settings.ffmpeg_path) or "missing",
        "convert_mode": settings.convert_mode,
        "metadata_provider": _pipeline(request).provider.name,
    }


@router.options("/api/info")
@router.options("/api/convert")
async def preflight() -> Response:
    return Response(status_code=200)


@router.post("/api/info")
async def fetch_info(request: Request, body: Optional[InfoBody] = None) -> Dict[str, Any]:
    """Return title, author and stats for the video behind ``url``."""
    body = body or InfoBody()
    try:
        details = await _pipeline(request).info(body.url)
    except ConverterError:
        raise
    except Exception as exc:
        raise UpstreamFailure(
            "Failed to fetch video information. Please check the URL and try again.",
            detail=repr(exc),
        ) from exc
    return {
        "videoId": details.video_id,
        "title": details.title,
        "author": details.author,
        "duration": details.duration,
        "thumbnail": details.thumbnail,
        "viewCount": details.view_count,
    }


@router.post("/api/convert")
async def convert(request: Request, body: Optional[ConvertBody] = None):
    """
    Produce the requested output.

    - stream:   media bytes with Content-Disposition, merged via ffmpeg when needed
    - link:     {success, downloadUrl, filename}
    - services: {success, services: [{name, url, instructions}]}
    """
    body = body or ConvertBody()
    pipeline = _pipeline(request)
    mode = pipeline.settings.convert_mode
    try:
        if mode == "services":
            return pipeline.services(body.url, body.format)
        if mode == "link":
            return await pipeline.link(body.url, body.format, body.quality)
        stream = await pipeline.convert(body.url, body.format, body.quality)
    except ConverterError:
        raise
    except Exception as exc:
        raise UpstreamFailure(detail=repr(exc)) from exc

    headers = {"Content-Disposition": f'attachment; filename="{stream.filename}"'}
    if stream.content_length is not None:
        headers["Content-Length"] = str(stream.content_length)
    return StreamingResponse(
        stream.body(),
        media_type=stream.media_type,
        headers=headers,
        background=BackgroundTask(stream.aclose),
    )


async def _converter_error(request: Request, exc: ConverterError) -> JSONResponse:
    if isinstance(exc, UpstreamFailure):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = MethodNotAllowed.default_message if exc.status_code == 405 else str(exc.detail)
    return JSONResponse({"error": message}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse({"error": "Invalid request body"}, status_code=400)


def create_app(
    settings: Optional[Settings] = None,
    *,
    metadata_provider: Optional[MetadataProvider] = None,
    downloader: Optional[Downloader] = None,
    muxer: Optional[FfmpegMuxer] = None,
) -> FastAPI:
    """Build the application; collaborators default to the real adapters."""
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(title="tubeconv API", version=__version__)
    app.state.settings = settings
    app.state.pipeline = ConvertPipeline(
        settings,
        metadata_provider or build_metadata_provider(settings),
        downloader or HttpDownloader(settings),
        muxer,
    )

    # Any origin may call the API; the browser UI is served elsewhere.
    app.add_middleware(
        EmptyPreflightCORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ConverterError, _converter_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("server:app", host="0.0.0.0", port=8000, reload=False)

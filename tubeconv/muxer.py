"""ffmpeg remux of a video-only and an audio-only stream into one mp4."""
from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from typing import List, Optional

from tubeconv.config import Settings
from tubeconv.errors import MuxFailure

logger = logging.getLogger(__name__)


class FfmpegMuxer:
    """Copies the video stream and encodes audio to AAC."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: Optional[int] = None) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "FfmpegMuxer":
        return cls(settings.ffmpeg_path, settings.merge_timeout)

    def build_command(self, video_path: str, audio_path: str, output_path: str) -> List[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-i",
            video_path,
            "-i",
            audio_path,
            "-map",
            "0:v:0",
            "-map",
            "1:a:0",
            "-c:v",
            "copy",
            "-c:a",
            "aac",
            "-b:a",
            "192k",
            "-movflags",
            "faststart",
            output_path,
        ]

    def _run(self, cmd: List[str], output_path: str) -> None:
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as exc:
            raise MuxFailure(detail=f"ffmpeg not found at {self.ffmpeg_path}") from exc
        except subprocess.TimeoutExpired as exc:
            raise MuxFailure(detail=f"ffmpeg timed out after {self.timeout}s") from exc
        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip().splitlines()
            raise MuxFailure(detail="\n".join(stderr[-4:]) or f"ffmpeg exited with code {proc.returncode}")
        if not os.path.exists(output_path):
            raise MuxFailure(detail="Merged output not created")

    async def merge(self, video_path: str, audio_path: str, output_path: str) -> None:
        cmd = self.build_command(video_path, audio_path, output_path)
        logger.debug("Running %s", " ".join(cmd))
        await asyncio.to_thread(self._run, cmd, output_path)

"""Per-request temp storage and the concurrent two-stream fetch."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from typing import Dict, List

from tubeconv.errors import StagingFailure, UpstreamFailure
from tubeconv.models import EncodingDescriptor, MergeSelection, StagedArtifact
from tubeconv.providers import Downloader

logger = logging.getLogger(__name__)


class StagingArea:
    """Temp directory owned by exactly one request.

    ``cleanup()`` may be called from several exit paths; only the first
    call does any work.
    """

    def __init__(self, root: str, video_id: str) -> None:
        os.makedirs(root, exist_ok=True)
        self.directory = tempfile.mkdtemp(prefix=f"tubeconv_{video_id}_", dir=root)
        self._paths: Dict[str, str] = {}
        self._cleaned = False

    def path(self, role: str, ext: str) -> str:
        """Reserve the artifact path for ``role`` (video, audio, output)."""
        path = os.path.join(self.directory, f"{role}.{ext or 'bin'}")
        self._paths[role] = path
        return path

    def artifact(self, role: str, encoding: EncodingDescriptor) -> StagedArtifact:
        return StagedArtifact(path=self.path(role, encoding.container), encoding=encoding)

    @property
    def paths(self) -> List[str]:
        return list(self._paths.values())

    @property
    def cleaned(self) -> bool:
        return self._cleaned

    def remove(self, *paths: str) -> None:
        """Delete each path independently; failures are logged, not raised."""
        for path in paths:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not remove %s: %s", path, exc)

    def cleanup(self) -> None:
        if self._cleaned:
            return
        self._cleaned = True
        self.remove(*self.paths)
        shutil.rmtree(self.directory, ignore_errors=True)


async def _fetch(downloader: Downloader, artifact: StagedArtifact) -> StagedArtifact:
    await downloader.fetch_to(artifact.encoding, artifact.path)
    return artifact


async def stage_pair(downloader: Downloader, selection: MergeSelection, area: StagingArea):
    """Fetch the video and audio streams of ``selection`` concurrently.

    Both fetches always run to completion. If either fails, both files are
    deleted and :class:`StagingFailure` is raised from the first error.
    """
    video = area.artifact("video", selection.video)
    audio = area.artifact("audio", selection.audio)
    results = await asyncio.gather(
        _fetch(downloader, video),
        _fetch(downloader, audio),
        return_exceptions=True,
    )
    errors = [result for result in results if isinstance(result, BaseException)]
    if errors:
        area.remove(video.path, audio.path)
        first = errors[0]
        logger.warning("Staging failed for %s+%s: %s", selection.video.format_id, selection.audio.format_id, first)
        if not isinstance(first, Exception):
            raise first
        detail = first.detail if isinstance(first, UpstreamFailure) and first.detail else str(first)
        raise StagingFailure(detail=detail) from first
    return video, audio

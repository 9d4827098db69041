"""Value objects passed between pipeline stages.

All of them are frozen dataclasses; nothing is mutated once a provider
has produced it.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Union

from tubeconv.errors import InvalidInput

HeaderPairs = Tuple[Tuple[str, str], ...]


@dataclass(frozen=True)
class EncodingDescriptor:
    """One retrievable variant of a video as reported by the provider."""

    format_id: str
    container: str
    has_audio: bool
    has_video: bool
    locator: str
    height: Optional[int] = None
    audio_bitrate: Optional[float] = None
    filesize: Optional[int] = None
    http_headers: HeaderPairs = ()
    # Set when the host throttles whole-file GETs; fetch in Range requests of this size.
    range_chunk_size: Optional[int] = None

    @property
    def is_combined(self) -> bool:
        return self.has_audio and self.has_video

    @property
    def is_audio_only(self) -> bool:
        return self.has_audio and not self.has_video

    @property
    def is_video_only(self) -> bool:
        return self.has_video and not self.has_audio


@dataclass(frozen=True)
class VideoDetails:
    video_id: str
    title: str
    author: str
    duration: int = 0
    thumbnail: str = ""
    view_count: int = 0
    encodings: Tuple[EncodingDescriptor, ...] = field(default_factory=tuple)


class OutputKind(str, Enum):
    AUDIO = "mp3"
    COMBINED = "mp4"


_QUALITY_RE = re.compile(r"^(\d{2,5})\s*(p|k|kbps)?$", re.IGNORECASE)
_UNBOUNDED = {"", "best", "highest", "max"}


@dataclass(frozen=True)
class SelectionRequest:
    """Desired output: kind plus an optional ceiling (lines or kbps)."""

    kind: OutputKind
    ceiling: Optional[int] = None

    @classmethod
    def parse(cls, output_format: Optional[str], quality: Optional[object] = None) -> "SelectionRequest":
        """Parse the ``format``/``quality`` pair from a convert request."""
        try:
            kind = OutputKind((output_format or OutputKind.AUDIO.value).strip().lower())
        except ValueError:
            raise InvalidInput("Format must be mp3 or mp4") from None

        raw = "" if quality is None else str(quality).strip().lower()
        if raw in _UNBOUNDED:
            return cls(kind=kind)
        match = _QUALITY_RE.match(raw)
        if match is None:
            raise InvalidInput(f"Invalid quality: {quality}")
        return cls(kind=kind, ceiling=int(match.group(1)))


@dataclass(frozen=True)
class SingleSelection:
    encoding: EncodingDescriptor


@dataclass(frozen=True)
class MergeSelection:
    video: EncodingDescriptor
    audio: EncodingDescriptor

    def __post_init__(self) -> None:
        if not self.video.is_video_only or not self.audio.is_audio_only:
            raise ValueError("merge pair needs one video-only and one audio-only encoding")


Selection = Union[SingleSelection, MergeSelection]


@dataclass(frozen=True)
class StagedArtifact:
    """Request-owned temp file holding the bytes of one encoding."""

    path: str
    encoding: EncodingDescriptor

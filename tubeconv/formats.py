"""Format selection and output naming.

Everything here is pure: no I/O and deterministic for a given input.

Combined-output fallback order:

1. best combined encoding at or below the ceiling
2. separate video-only + audio-only pair, when the ceiling asks for HD
   and the pair is taller than what step 1 found
3. step 1's candidate
4. tallest combined encoding regardless of ceiling
5. any video-only + audio-only pair when there is no combined encoding
"""
from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Sequence

from tubeconv.errors import NoMatchingEncoding
from tubeconv.models import (
    EncodingDescriptor,
    MergeSelection,
    OutputKind,
    Selection,
    SelectionRequest,
    SingleSelection,
)

logger = logging.getLogger(__name__)

# Below this height a merged DASH pair is preferred when the caller asked for HD.
HQ_THRESHOLD = 720

MAX_FILENAME_LENGTH = 100

_AUDIO_TYPES = {"m4a": "audio/mp4", "mp4": "audio/mp4", "webm": "audio/webm", "mp3": "audio/mpeg", "opus": "audio/ogg"}
_VIDEO_TYPES = {"mp4": "video/mp4", "webm": "video/webm", "3gp": "video/3gpp"}


def _height(encoding: EncodingDescriptor) -> int:
    return encoding.height or 0


def _bitrate(encoding: EncodingDescriptor) -> float:
    return encoding.audio_bitrate or 0.0


def _best(candidates: Iterable[EncodingDescriptor], key) -> Optional[EncodingDescriptor]:
    # max() keeps the first maximal element, which is our tie-break.
    candidates = list(candidates)
    if not candidates:
        return None
    return max(candidates, key=key)


def _within(encoding: EncodingDescriptor, ceiling: Optional[int]) -> bool:
    return ceiling is None or _height(encoding) <= ceiling


def best_audio(encodings: Sequence[EncodingDescriptor]) -> Optional[EncodingDescriptor]:
    """Highest-bitrate audio-only encoding."""
    return _best((e for e in encodings if e.is_audio_only), _bitrate)


def _best_video_only(encodings: Sequence[EncodingDescriptor], ceiling: Optional[int]) -> Optional[EncodingDescriptor]:
    return _best((e for e in encodings if e.is_video_only and _within(e, ceiling)), _height)


def _merge_pair(encodings: Sequence[EncodingDescriptor], ceiling: Optional[int]) -> Optional[MergeSelection]:
    video = _best_video_only(encodings, ceiling)
    audio = best_audio(encodings)
    if video is None or audio is None:
        return None
    return MergeSelection(video=video, audio=audio)


def _combined_tiers(encodings: Sequence[EncodingDescriptor], ceiling: Optional[int]):
    combined: List[EncodingDescriptor] = [e for e in encodings if e.is_combined]
    under = _best((e for e in combined if _within(e, ceiling)), _height)
    overall = _best(combined, _height)
    return under, overall


def _wants_hd(ceiling: Optional[int]) -> bool:
    return ceiling is None or ceiling >= HQ_THRESHOLD


def select_encodings(encodings: Sequence[EncodingDescriptor], request: SelectionRequest) -> Selection:
    """Pick the encoding(s) that best satisfy ``request``.

    Raises :class:`NoMatchingEncoding` when nothing usable exists.
    """
    encodings = list(encodings)

    if request.kind is OutputKind.AUDIO:
        audio = best_audio(encodings)
        if audio is None:
            raise NoMatchingEncoding("No audio format available for this video")
        return SingleSelection(audio)

    ceiling = request.ceiling
    under, overall = _combined_tiers(encodings, ceiling)

    if under is not None and not (_wants_hd(ceiling) and _height(under) < HQ_THRESHOLD):
        return SingleSelection(under)

    if _wants_hd(ceiling):
        pair = _merge_pair(encodings, ceiling)
        if pair is not None and (under is None or _height(pair.video) > _height(under)):
            logger.debug("Merging %s + %s", pair.video.format_id, pair.audio.format_id)
            return pair

    if under is not None:
        return SingleSelection(under)
    if overall is not None:
        return SingleSelection(overall)

    pair = _merge_pair(encodings, ceiling) or _merge_pair(encodings, None)
    if pair is not None:
        return pair
    raise NoMatchingEncoding()


def fallback_combined(encodings: Sequence[EncodingDescriptor], request: SelectionRequest) -> Optional[EncodingDescriptor]:
    """The single-stream answer for ``request`` ignoring the merge tier."""
    if request.kind is OutputKind.AUDIO:
        return best_audio(encodings)
    under, overall = _combined_tiers(list(encodings), request.ceiling)
    return under or overall


def media_type_for(encoding: EncodingDescriptor) -> str:
    container = encoding.container.lower()
    table = _VIDEO_TYPES if encoding.has_video else _AUDIO_TYPES
    return table.get(container, "application/octet-stream")


def extension_for(encoding: EncodingDescriptor) -> str:
    container = encoding.container.lower() or "bin"
    if not encoding.has_video and container == "mp4":
        return "m4a"
    return container


def sanitize_title(title: Optional[str], ext: str) -> str:
    """Create a safe, ASCII filename for Content-Disposition headers."""
    safe = re.sub(r"[^\w\s-]", "", title or "")
    safe = re.sub(r"\s+", "_", safe.strip())
    safe = safe.encode("ascii", "ignore").decode("ascii").strip("_")
    safe = safe[:MAX_FILENAME_LENGTH] or "download"
    return f"{safe}.{ext}"

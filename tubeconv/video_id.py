"""Canonical video id extraction from the URL shapes users paste."""
from __future__ import annotations

import re
from typing import Optional
from urllib.parse import parse_qs, urlparse

from tubeconv.errors import InvalidInput

_TOKEN = r"[A-Za-z0-9_-]{11}"

# Order matters: path-based shapes win over query parsing.
_PATTERNS = (
    re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/|youtube\.com/shorts/)(" + _TOKEN + r")(?![A-Za-z0-9_-])"),
    re.compile(r"^(" + _TOKEN + r")$"),
)
_TOKEN_RE = re.compile(r"^" + _TOKEN + r"$")


def extract_video_id(value: Optional[str]) -> Optional[str]:
    """Return the 11-character video id in ``value``, or ``None``."""
    if not value:
        return None
    text = value.strip()
    if not text:
        return None

    for pattern in _PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)

    try:
        parsed = urlparse(text)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    candidates = parse_qs(parsed.query).get("v") or []
    if candidates and _TOKEN_RE.match(candidates[0]):
        return candidates[0]
    return None


def require_video_id(value: Optional[str]) -> str:
    """Like :func:`extract_video_id` but raises :class:`InvalidInput`."""
    if value is None or not str(value).strip():
        raise InvalidInput("URL is required")
    video_id = extract_video_id(str(value))
    if video_id is None:
        raise InvalidInput("Invalid YouTube URL")
    return video_id

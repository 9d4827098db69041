"""Third-party converter links, for deployments that cannot fetch streams."""
from __future__ import annotations

from typing import Dict, List

from tubeconv.models import OutputKind

WATCH = "https://www.youtube.com/watch?v={video_id}"

SERVICE_TEMPLATES = {
    OutputKind.AUDIO: (
        ("Y2Mate", "https://www.y2mate.com/youtube-mp3/{video_id}", 'Click "Convert" then "Download"'),
        ("YTMP3", "https://ytmp3.cc/youtube-to-mp3/?url=" + WATCH, 'Click "Convert" then "Download"'),
        ("SaveFrom", "https://en.savefrom.net/391GA/#url=" + WATCH, "Select MP3 format and download"),
    ),
    OutputKind.COMBINED: (
        ("Y2Mate", "https://www.y2mate.com/youtube/{video_id}", 'Select quality and click "Download"'),
        ("SaveFrom", "https://en.savefrom.net/391GA/#url=" + WATCH, "Select MP4 quality and download"),
        ("SSYouTube", "https://ssyoutube.com/watch?v={video_id}", "Select format and download"),
    ),
}


def converter_services(video_id: str, kind: OutputKind) -> List[Dict[str, str]]:
    return [
        {"name": name, "url": template.format(video_id=video_id), "instructions": instructions}
        for name, template, instructions in SERVICE_TEMPLATES[kind]
    ]

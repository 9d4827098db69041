"""Runtime configuration and logging setup.

Values come from environment variables once at startup and are passed
explicitly into the pipeline; nothing reads ``os.environ`` after that.
"""
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

CONVERT_MODES = ("stream", "link", "services")
METADATA_PROVIDERS = ("ytdlp", "oembed")

DEFAULT_HTTP_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0 Safari/537.36"
}

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def _int_env(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name, "")
    try:
        return max(int(raw or default), minimum)
    except ValueError:
        return default


def _choice_env(env: Mapping[str, str], name: str, choices: tuple, default: str) -> str:
    value = (env.get(name) or default).strip().lower()
    return value if value in choices else default


@dataclass(frozen=True)
class Settings:
    convert_mode: str = "stream"
    metadata_provider: str = "ytdlp"
    ffmpeg_path: str = "ffmpeg"
    temp_dir: str = field(default_factory=tempfile.gettempdir)
    merge_timeout: Optional[int] = 600
    http_timeout: int = 30
    chunk_size: int = 1024 * 256
    log_level: str = "INFO"
    http_headers: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HTTP_HEADERS))

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``env`` (defaults to ``os.environ``)."""
        env = os.environ if env is None else env
        merge_timeout = _int_env(env, "MERGE_TIMEOUT", 600, minimum=0)
        return cls(
            convert_mode=_choice_env(env, "CONVERT_MODE", CONVERT_MODES, "stream"),
            metadata_provider=_choice_env(env, "METADATA_PROVIDER", METADATA_PROVIDERS, "ytdlp"),
            ffmpeg_path=env.get("FFMPEG_PATH") or "ffmpeg",
            temp_dir=env.get("TEMP_DIR") or tempfile.gettempdir(),
            merge_timeout=merge_timeout or None,
            http_timeout=_int_env(env, "HTTP_TIMEOUT", 30),
            chunk_size=_int_env(env, "CHUNK_SIZE", 1024 * 256),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a stream handler to the package logger (idempotent)."""
    logger = logging.getLogger("tubeconv")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger

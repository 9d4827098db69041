"""tubeconv: video URL to audio/video download service."""

__version__ = "1.0.0"

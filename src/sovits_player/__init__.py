"""Streaming playback client for a local GPT-SoVITS speech server."""

__version__ = "0.1.0"

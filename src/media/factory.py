"""Factory returning the configured media backend."""

from __future__ import annotations

from config.settings import get_settings
from media.backends import MediaBackend


def build_media_backend() -> MediaBackend | None:
    """Return the configured media backend, or None for signaling-only clients."""

    settings = get_settings()
    if settings.media_backend == "none":
        return None
    if settings.media_backend == "aiortc":
        # Lazy import to avoid loading aiortc/PyAV unless media is actually used.
        from media.aiortc_backend import AiortcBackend

        return AiortcBackend()
    raise ValueError(f"Unsupported media backend: {settings.media_backend}")

"""
Common contract for the HLS delivery strategies and the factory that picks
one from configuration.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)

IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"


@dataclass
class SegmentSource:
    """
    Where the bytes of a segment come from.

    Either a finished file on disk (path) or a live byte stream (chunks)
    whose first chunk has already been produced by the encoder.
    """
    path: Optional[str] = None
    chunks: Optional[AsyncIterator[bytes]] = None
    cache_control: str = IMMUTABLE_CACHE_CONTROL


class StreamProvider:
    """Base class for delivery strategies."""

    mode = "base"

    async def start(self):
        """Start background tasks; called once from the application lifespan."""

    async def get_playlist(self, asset_id: str) -> str:
        raise NotImplementedError

    async def open_segment(self, asset_id: str, name: str) -> SegmentSource:
        raise NotImplementedError

    async def shutdown(self):
        """Terminate processes, settle builds and release resources."""


def create_provider(settings, plex_client, supervisor) -> StreamProvider:
    """Instantiate the provider selected by STREAM_MODE."""
    mode = settings.STREAM_MODE

    if mode == "live":
        from session_manager import LiveSessionManager
        provider = LiveSessionManager(settings, plex_client, supervisor)
    elif mode == "vod":
        from vod_cache import VodCache
        provider = VodCache(settings, plex_client, supervisor)
    elif mode == "jit":
        from jit_encoder import JitEncoder
        provider = JitEncoder(settings, plex_client, supervisor)
    elif mode == "hybrid":
        from hybrid_vod import HybridVodProvider
        from vod_cache import VodCache
        vod_cache = VodCache(settings, plex_client, supervisor)
        provider = HybridVodProvider(settings, plex_client, vod_cache)
    else:
        raise ValueError(f"Unknown stream mode: {mode}")

    logger.info(f"Using '{mode}' stream provider")
    return provider

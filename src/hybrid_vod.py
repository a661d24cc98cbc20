"""
Hybrid provider: a background full VOD build with early playback.

The first touch of an asset starts a VodCache build in the background.
Playlists are served as soon as enough segments exist; segment requests
wait (bounded) for their file to be produced by the running build.
"""

import asyncio
import os
import logging
from typing import Dict, List, Set

from errors import NotReadyError
from paths import list_segments
from playlist import synthesize_playlist
from plex_client import resolve_duration_seconds
from providers import SegmentSource, StreamProvider
from vod_cache import VodCache

logger = logging.getLogger(__name__)


class HybridVodProvider(StreamProvider):
    mode = "hybrid"

    def __init__(self, settings, plex_client, vod_cache: VodCache):
        self.settings = settings
        self.plex_client = plex_client
        self.vod_cache = vod_cache
        self.segment_duration = settings.HLS_SEGMENT_DURATION
        self.fallback_duration = settings.FALLBACK_DURATION_SECONDS
        self.min_ready_segments = settings.HYBRID_MIN_READY_SEGMENTS
        self.segment_wait_timeout = settings.HYBRID_SEGMENT_WAIT_TIMEOUT
        self.segment_poll_interval = settings.HYBRID_SEGMENT_POLL_INTERVAL
        self.partial_grace_polls = settings.HYBRID_PARTIAL_GRACE_POLLS
        self.segment_read_timeout = settings.HYBRID_SEGMENT_READ_TIMEOUT
        self.segment_read_poll = settings.HYBRID_SEGMENT_READ_POLL

        self.vod_builds: Dict[str, asyncio.Task] = {}
        self.completed_builds: Set[str] = set()

    def trigger_build(self, asset_id: str):
        """Start the full VOD build for an asset unless it is running or done."""
        if asset_id in self.completed_builds or asset_id in self.vod_builds:
            return
        self.vod_cache.cache_dir_for(asset_id)
        self.vod_builds[asset_id] = asyncio.create_task(self._run_build(asset_id))

    async def _run_build(self, asset_id: str):
        try:
            await self.vod_cache.ensure(asset_id)
            self.completed_builds.add(asset_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Hybrid VOD build for {asset_id} failed: {e}")
        finally:
            self.vod_builds.pop(asset_id, None)

    async def wait_for_initial_segments(self, asset_id: str) -> List[str]:
        """
        Poll the cache until enough segments exist or the wait times out.

        Once at least one segment exists and the grace period has passed, the
        partial list is accepted so short assets do not block on the minimum.
        """
        cache_dir = self.vod_cache.cache_dir_for(asset_id)
        loop = asyncio.get_running_loop()
        start = loop.time()
        grace = self.segment_poll_interval * self.partial_grace_polls

        while loop.time() - start < self.segment_wait_timeout:
            segments = list_segments(cache_dir)
            if len(segments) >= self.min_ready_segments:
                return segments
            if segments and loop.time() - start > grace:
                return segments
            await asyncio.sleep(self.segment_poll_interval)

        return list_segments(cache_dir)

    async def get_playlist(self, asset_id: str) -> str:
        self.trigger_build(asset_id)

        ready = await self.wait_for_initial_segments(asset_id)
        if not ready:
            logger.warning(f"No segments ready for {asset_id} yet")
            raise NotReadyError()

        metadata = await self.plex_client.get_metadata(asset_id)
        total_seconds = resolve_duration_seconds(metadata, self.fallback_duration)
        return synthesize_playlist(asset_id, total_seconds, self.segment_duration)

    async def wait_for_segment_file(self, path: str):
        loop = asyncio.get_running_loop()
        start = loop.time()
        while loop.time() - start < self.segment_read_timeout:
            if os.path.exists(path):
                return
            await asyncio.sleep(self.segment_read_poll)
        if not os.path.exists(path):
            raise NotReadyError("Segment not ready")

    async def open_segment(self, asset_id: str, name: str) -> SegmentSource:
        segment_path = self.vod_cache.resolve_segment_path(asset_id, name)
        self.trigger_build(asset_id)
        await self.wait_for_segment_file(segment_path)
        return SegmentSource(path=segment_path)

    async def shutdown(self):
        logger.info("Shutting down HybridVodProvider...")
        await self.vod_cache.shutdown()
        pending = list(self.vod_builds.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.vod_builds.clear()
        logger.info("HybridVodProvider shutdown complete")

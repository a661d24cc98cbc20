"""
Full VOD cache.

The whole asset is transcoded once into a permanent HLS cache directory;
afterwards every request is a plain file read.
"""

import os
import shutil
import logging
from typing import Optional

from dedup import BuildRegistry
from errors import BuildFailedError, SegmentNotFoundError
from paths import (PLAYLIST_NAME, SEGMENT_PATTERN, cache_dir_for,
                   require_segment_path)
from playlist import is_complete_playlist, rewrite_playlist
from providers import SegmentSource, StreamProvider
from transcoder import TranscodeSupervisor

logger = logging.getLogger(__name__)


class VodCache(StreamProvider):
    mode = "vod"

    def __init__(self, settings, plex_client, supervisor: TranscodeSupervisor):
        self.settings = settings
        self.plex_client = plex_client
        self.supervisor = supervisor
        self.cache_root = os.path.join(os.path.abspath(settings.STREAM_CACHE_DIR), "vod")
        self.builds = BuildRegistry("vod")
        os.makedirs(self.cache_root, exist_ok=True)

    def cache_dir_for(self, asset_id: str) -> str:
        return cache_dir_for(self.cache_root, asset_id)

    def playlist_path_for(self, asset_id: str) -> str:
        return os.path.join(self.cache_dir_for(asset_id), PLAYLIST_NAME)

    def resolve_segment_path(self, asset_id: str, name: str) -> str:
        return require_segment_path(self.cache_dir_for(asset_id), name)

    def _read_playlist_file(self, asset_id: str) -> Optional[str]:
        try:
            with open(self.playlist_path_for(asset_id), 'r', encoding='utf-8') as fh:
                return fh.read()
        except FileNotFoundError:
            return None

    def is_cached(self, asset_id: str) -> bool:
        """True when a finished build for the asset is on disk."""
        if self.builds.is_running(asset_id):
            return False
        content = self._read_playlist_file(asset_id)
        return content is not None and is_complete_playlist(content)

    async def ensure(self, asset_id: str) -> str:
        """Build the asset's cache unless a finished one exists; returns the playlist path."""
        playlist_path = self.playlist_path_for(asset_id)
        if self.is_cached(asset_id):
            return playlist_path

        await self.builds.run_exclusive(asset_id, lambda: self._build(asset_id))
        return playlist_path

    def build_command(self, asset_id: str, source_url: str):
        cache_dir = self.cache_dir_for(asset_id)
        output = self.supervisor.hls_output_args(
            os.path.join(cache_dir, PLAYLIST_NAME),
            os.path.join(cache_dir, SEGMENT_PATTERN),
            self.settings.HLS_SEGMENT_DURATION,
            live=False,
        )
        return self.supervisor.build_command(source_url, output)

    async def _build(self, asset_id: str):
        cache_dir = self.cache_dir_for(asset_id)
        shutil.rmtree(cache_dir, ignore_errors=True)
        os.makedirs(cache_dir, exist_ok=True)

        try:
            source_url = await self.plex_client.get_primary_part_stream_url(asset_id)
            job = await self.supervisor.start(
                self.build_command(asset_id, source_url), label=f"vod:{asset_id}")
            await job.check()

            content = self._read_playlist_file(asset_id)
            if content is None or not is_complete_playlist(content):
                raise BuildFailedError("ffmpeg finished without a complete playlist")
        except BaseException as e:
            logger.error(f"VOD build for {asset_id} failed: {e!r}")
            shutil.rmtree(cache_dir, ignore_errors=True)
            raise

        logger.info(f"VOD build for {asset_id} completed")

    async def get_playlist(self, asset_id: str) -> str:
        await self.ensure(asset_id)
        content = self._read_playlist_file(asset_id)
        if content is None:
            raise BuildFailedError("Cached playlist disappeared")
        return rewrite_playlist(asset_id, content)

    async def open_segment(self, asset_id: str, name: str) -> SegmentSource:
        path = self.resolve_segment_path(asset_id, name)
        if not os.path.exists(path):
            raise SegmentNotFoundError()
        return SegmentSource(path=path)

    async def shutdown(self):
        logger.info("Shutting down VodCache...")
        self.builds.close()
        self.supervisor.close()
        await self.supervisor.terminate_all()
        await self.builds.wait_all()
        logger.info("VodCache shutdown complete")

"""
Just-in-time segment encoder.

The playlist is synthesized from the asset duration up front; each segment
is transcoded only when first requested, by seeking the source to the
segment's start and encoding exactly one segment length. Finished segments
are cached on disk; the first requester of a segment receives the encoder
output live while it is being written to the cache.
"""

import asyncio
import os
import logging
from typing import AsyncIterator, Dict, Optional

from dedup import BuildRegistry
from errors import BuildFailedError
from paths import cache_dir_for, require_segment_path, segment_index
from playlist import synthesize_playlist
from plex_client import resolve_duration_seconds
from providers import SegmentSource, StreamProvider
from transcoder import TranscodeSupervisor

logger = logging.getLogger(__name__)

# Marks the end of the tee'd byte stream
END_OF_STREAM = None


class JitEncoder(StreamProvider):
    mode = "jit"

    def __init__(self, settings, plex_client, supervisor: TranscodeSupervisor):
        self.settings = settings
        self.plex_client = plex_client
        self.supervisor = supervisor
        self.segment_duration = settings.HLS_SEGMENT_DURATION
        self.fallback_duration = settings.FALLBACK_DURATION_SECONDS
        self.cache_root = os.path.join(os.path.abspath(settings.STREAM_CACHE_DIR), "jit")
        self.builds = BuildRegistry("jit")
        # asset_id -> resolved source URL, kept for the process lifetime
        self.source_urls: Dict[str, str] = {}
        os.makedirs(self.cache_root, exist_ok=True)

    def cache_dir_for(self, asset_id: str) -> str:
        return cache_dir_for(self.cache_root, asset_id)

    async def get_source_url(self, asset_id: str) -> str:
        url = self.source_urls.get(asset_id)
        if url is None:
            url = await self.plex_client.get_primary_part_stream_url(asset_id)
            self.source_urls[asset_id] = url
        return url

    async def get_playlist(self, asset_id: str) -> str:
        self.cache_dir_for(asset_id)
        metadata = await self.plex_client.get_metadata(asset_id)
        total_seconds = resolve_duration_seconds(metadata, self.fallback_duration)
        return synthesize_playlist(asset_id, total_seconds, self.segment_duration)

    async def open_segment(self, asset_id: str, name: str) -> SegmentSource:
        cache_dir = self.cache_dir_for(asset_id)
        segment_path = require_segment_path(cache_dir, name)
        os.makedirs(cache_dir, exist_ok=True)

        if os.path.exists(segment_path):
            return SegmentSource(path=segment_path)

        tee: asyncio.Queue = asyncio.Queue()
        task, created = self.builds.acquire(
            (asset_id, name),
            lambda: self._build_segment(asset_id, name, segment_path, tee))

        if not created:
            # Late joiners wait for the finished file instead of the live stream
            await asyncio.shield(task)
            return SegmentSource(path=segment_path)

        first_chunk = await tee.get()
        if first_chunk is END_OF_STREAM:
            # Either a failure (raised here) or an empty encode
            await asyncio.shield(task)
            return SegmentSource(path=segment_path)

        return SegmentSource(chunks=self._drain_tee(first_chunk, tee, task))

    async def _drain_tee(self, first_chunk: bytes, tee: asyncio.Queue,
                         task: asyncio.Task) -> AsyncIterator[bytes]:
        yield first_chunk
        while True:
            chunk = await tee.get()
            if chunk is END_OF_STREAM:
                break
            yield chunk
        # Surfaces a failed encode after partial output
        await asyncio.shield(task)

    def build_command(self, source_url: str, index: int):
        return self.supervisor.build_command(
            source_url,
            self.supervisor.mpegts_pipe_args(),
            seek_seconds=index * self.segment_duration,
            duration_seconds=self.segment_duration,
            aligned_segments=True,
        )

    async def _build_segment(self, asset_id: str, name: str, segment_path: str,
                             tee: Optional[asyncio.Queue] = None):
        """Encode one segment to a temporary file, then rename it into place."""
        tmp_path = f"{segment_path}.tmp"
        try:
            index = segment_index(name)
            source_url = await self.get_source_url(asset_id)
            logger.info(
                f"Starting JIT encode for {asset_id}/{name} at {index * self.segment_duration:.3f}s")
            job = await self.supervisor.start(
                self.build_command(source_url, index),
                label=f"jit:{asset_id}:{name}", pipe_stdout=True)

            try:
                with open(tmp_path, 'wb') as fh:
                    while True:
                        chunk = await job.read_stdout()
                        if not chunk:
                            break
                        fh.write(chunk)
                        if tee is not None:
                            tee.put_nowait(chunk)
                await job.check()
            except BaseException:
                await self.supervisor.terminate(job)
                raise

            os.replace(tmp_path, segment_path)
            logger.info(f"Segment cached: {asset_id}/{name}")
        except BaseException as e:
            if not isinstance(e, BuildFailedError):
                logger.error(f"JIT encode for {asset_id}/{name} failed: {e!r}")
            try:
                os.remove(tmp_path)
            except FileNotFoundError:
                pass
            raise
        finally:
            if tee is not None:
                tee.put_nowait(END_OF_STREAM)

    async def shutdown(self):
        logger.info("Shutting down JitEncoder...")
        self.builds.close()
        self.supervisor.close()
        await self.supervisor.terminate_all()
        await self.builds.wait_all()
        logger.info("JitEncoder shutdown complete")

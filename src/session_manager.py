"""
Live sliding-window HLS sessions.

Each asset gets one continuously running real-time encode that appends
segments to its own directory and deletes old ones. Sessions are touched on
every read and evicted once idle longer than SESSION_TTL or once their
encoder exits.
"""

import asyncio
import os
import shutil
import time
import logging
from typing import Dict, Optional

from dedup import BuildRegistry
from errors import BuildFailedError, NotReadyError, SegmentNotFoundError
from paths import (PLAYLIST_NAME, SEGMENT_PATTERN, cache_dir_for,
                   require_segment_path)
from playlist import count_ready_segments, rewrite_playlist
from providers import SegmentSource, StreamProvider
from transcoder import TranscodeJob, TranscodeSupervisor

logger = logging.getLogger(__name__)


class LiveSession:
    """A live encode bound to one asset."""

    def __init__(self, asset_id: str, session_dir: str, settings,
                 plex_client, supervisor: TranscodeSupervisor):
        self.asset_id = asset_id
        self.settings = settings
        self.plex_client = plex_client
        self.supervisor = supervisor
        self.session_dir = session_dir
        self.playlist_path = os.path.join(session_dir, PLAYLIST_NAME)
        self.segment_pattern = os.path.join(session_dir, SEGMENT_PATTERN)
        self.ttl = settings.SESSION_TTL
        self.created_at = time.time()
        self.last_access = self.created_at
        self.status = "starting"
        self.job: Optional[TranscodeJob] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def ended(self) -> bool:
        return self.status in ("stopped", "failed")

    def build_command(self, source_url: str):
        output = self.supervisor.hls_output_args(
            self.playlist_path,
            self.segment_pattern,
            self.settings.HLS_SEGMENT_DURATION,
            live=True,
            list_size=self.settings.HLS_WINDOW_SEGMENTS,
        )
        return self.supervisor.build_command(source_url, output, realtime=True)

    async def start(self):
        """Spawn the encoder and wait until its playlist lists a segment."""
        os.makedirs(self.session_dir, exist_ok=True)
        source_url = await self.plex_client.get_primary_part_stream_url(self.asset_id)
        self.job = await self.supervisor.start(
            self.build_command(source_url), label=f"live:{self.asset_id}")
        self._monitor_task = asyncio.create_task(self._monitor_process())
        await self._wait_until_ready()
        self.status = "running"
        logger.info(f"Live session for {self.asset_id} is ready in {self.session_dir}")

    async def _wait_until_ready(self):
        timeout = self.settings.PLAYLIST_WAIT_TIMEOUT
        poll = self.settings.PLAYLIST_POLL_INTERVAL
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            content = self._read_playlist_file()
            if content is not None and count_ready_segments(content) > 0:
                return
            if self.job is not None and not self.job.running:
                code = self.job.returncode
                raise BuildFailedError(
                    f"ffmpeg exited with code={code} before the playlist was ready",
                    exit_code=code, signal=-code if code and code < 0 else None)
            if loop.time() >= deadline:
                raise NotReadyError()
            await asyncio.sleep(poll)

    async def _monitor_process(self):
        if self.job is None:
            return
        try:
            code = await self.job.wait()
            if self._stopping:
                return
            if code == 0:
                self.status = "stopped"
                logger.info(f"Live encoder for {self.asset_id} finished")
            else:
                self.status = "failed"
                logger.error(
                    f"Live encoder for {self.asset_id} exited unexpectedly with code {code}")
        except asyncio.CancelledError:
            pass

    def _read_playlist_file(self) -> Optional[str]:
        try:
            with open(self.playlist_path, 'r', encoding='utf-8', errors='ignore') as fh:
                return fh.read()
        except FileNotFoundError:
            return None

    def touch(self):
        self.last_access = time.time()

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self.last_access > self.ttl

    def read_playlist(self) -> Optional[str]:
        content = self._read_playlist_file()
        if content is None:
            return None
        return rewrite_playlist(self.asset_id, content)

    def get_segment_path(self, name: str) -> Optional[str]:
        path = require_segment_path(self.session_dir, name)
        return path if os.path.exists(path) else None

    async def stop(self):
        """Terminate the encoder and remove the session directory."""
        self._stopping = True
        await self.supervisor.terminate(self.job)

        if self._monitor_task and not self._monitor_task.done():
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass

        if self.status != "failed":
            self.status = "stopped"

        try:
            shutil.rmtree(self.session_dir)
            logger.info(f"Removed live session directory {self.session_dir}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove session directory {self.session_dir}: {e}")


class LiveSessionManager(StreamProvider):
    """Provider serving one live session per asset."""

    mode = "live"

    def __init__(self, settings, plex_client, supervisor: TranscodeSupervisor):
        self.settings = settings
        self.plex_client = plex_client
        self.supervisor = supervisor
        self.cache_root = os.path.join(os.path.abspath(settings.STREAM_CACHE_DIR), "live")
        self.sweep_interval = settings.SESSION_SWEEP_INTERVAL
        self.sessions: Dict[str, LiveSession] = {}
        self.starts = BuildRegistry("live-sessions")
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

        os.makedirs(self.cache_root, exist_ok=True)
        logger.info(f"LiveSessionManager initialized with base dir: {self.cache_root}")

    async def start(self):
        self._running = True
        self._sweep_task = asyncio.create_task(self._periodic_sweep())

    def _new_session(self, asset_id: str) -> LiveSession:
        session_dir = cache_dir_for(self.cache_root, asset_id)
        session_dir = f"{session_dir}-{int(time.time() * 1000)}"
        return LiveSession(asset_id, session_dir, self.settings,
                           self.plex_client, self.supervisor)

    async def ensure_session(self, asset_id: str) -> LiveSession:
        # Validates the id before anything is spawned
        cache_dir_for(self.cache_root, asset_id)

        session = self.sessions.get(asset_id)
        if session is not None and not session.ended and not session.is_expired():
            session.touch()
            return session

        session = await self.starts.run_exclusive(
            asset_id, lambda: self._replace_session(asset_id))
        session.touch()
        return session

    async def _replace_session(self, asset_id: str) -> LiveSession:
        old = self.sessions.pop(asset_id, None)
        if old is not None:
            logger.info(f"Replacing ended or expired session for {asset_id}")
            try:
                await old.stop()
            except Exception as e:
                logger.error(f"Failed to stop old session for {asset_id}: {e}")

        session = self._new_session(asset_id)
        try:
            await session.start()
        except BaseException:
            await session.stop()
            raise

        self.sessions[asset_id] = session
        return session

    async def get_playlist(self, asset_id: str) -> str:
        session = await self.ensure_session(asset_id)
        content = session.read_playlist()
        if content is None:
            raise NotReadyError()
        return content

    async def open_segment(self, asset_id: str, name: str) -> SegmentSource:
        session = self.sessions.get(asset_id)
        if session is None:
            # Still validate the name so malformed requests map to 400
            require_segment_path(cache_dir_for(self.cache_root, asset_id), name)
            raise SegmentNotFoundError()

        session.touch()
        path = session.get_segment_path(name)
        if path is None:
            raise SegmentNotFoundError()
        return SegmentSource(path=path, cache_control="no-store")

    async def evict_expired(self):
        """Stop sessions that are idle past their TTL or whose encoder has exited."""
        now = time.time()
        expired = [
            asset_id for asset_id, session in self.sessions.items()
            if session.is_expired(now) or session.ended
        ]
        for asset_id in expired:
            if self.starts.is_running(asset_id):
                continue
            session = self.sessions.pop(asset_id, None)
            if session is None:
                continue
            logger.info(f"Evicting live session for {asset_id} (status={session.status})")
            try:
                await session.stop()
            except Exception as e:
                logger.error(f"Failed to stop expired session for {asset_id}: {e}")

    async def _periodic_sweep(self):
        while self._running:
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.evict_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in session sweep: {e}")

    async def shutdown(self):
        logger.info("Shutting down LiveSessionManager...")
        self._running = False
        self.starts.close()
        self.supervisor.close()

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass

        await self.supervisor.terminate_all()
        await self.starts.wait_all()

        sessions = list(self.sessions.values())
        self.sessions.clear()
        await asyncio.gather(*(session.stop() for session in sessions),
                             return_exceptions=True)
        logger.info("LiveSessionManager shutdown complete")

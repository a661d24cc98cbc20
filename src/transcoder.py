"""
FFmpeg process supervision.

Builds encoder command lines from settings, spawns one process per job,
logs its stderr, and tracks every live process so shutdown can terminate
them all (SIGTERM, bounded grace window, then SIGKILL).
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

from errors import BuildFailedError, ServiceShuttingDownError

logger = logging.getLogger(__name__)

# Stderr lines containing these are promoted from DEBUG to WARNING
STDERR_WARNING_PATTERNS = ['error', 'failed', 'invalid']

STDOUT_CHUNK_SIZE = 32768


class TranscodeJob:
    """A single supervised encoder process."""

    def __init__(self, label: str, process: asyncio.subprocess.Process):
        self.label = label
        self.process = process
        self.pid = process.pid
        self.started_at = time.time()
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    async def wait(self) -> int:
        code = await self.process.wait()
        if self._stderr_task is not None:
            # Drain whatever stderr is left so the last lines make it to the log
            try:
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
        return code

    async def check(self) -> int:
        """Wait for exit and raise BuildFailedError on a non-zero code."""
        code = await self.wait()
        if code != 0:
            signal = -code if code < 0 else None
            logger.error(
                f"Encoder {self.label} (pid {self.pid}) failed: exit_code={code} signal={signal}")
            raise BuildFailedError(
                f"ffmpeg exited with code={code} signal={signal}",
                exit_code=code, signal=signal)
        return code

    async def read_stdout(self, chunk_size: int = STDOUT_CHUNK_SIZE) -> bytes:
        if self.process.stdout is None:
            return b""
        return await self.process.stdout.read(chunk_size)

    async def _log_stderr(self):
        """Log encoder stderr line by line; noisy lines stay at DEBUG."""
        if not self.process.stderr:
            return

        buf = b""
        try:
            while True:
                chunk = await self.process.stderr.read(4096)
                if not chunk:
                    break

                buf += chunk
                while b"\n" in buf:
                    line, buf = buf.split(b"\n", 1)
                    self._log_line(line)

                # ffmpeg progress lines use \r; keep the buffer bounded
                if len(buf) > 65536:
                    buf = b""
            if buf:
                self._log_line(buf)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Error reading encoder stderr for {self.label}: {e}")

    def _log_line(self, raw: bytes):
        line = raw.decode('utf-8', errors='ignore').strip()
        if not line:
            return
        lower = line.lower()
        if any(pattern in lower for pattern in STDERR_WARNING_PATTERNS):
            logger.warning(f"ffmpeg [{self.label}]: {line}")
        else:
            logger.debug(f"ffmpeg [{self.label}]: {line}")


class TranscodeSupervisor:
    """Builds encoder commands and owns the registry of live processes."""

    def __init__(self, settings):
        self.settings = settings
        self.ffmpeg_path = settings.FFMPEG_PATH
        self.terminate_grace = settings.PROCESS_TERMINATE_GRACE
        self.processes: Dict[int, TranscodeJob] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self.processes)

    # ------------------------------------------------------------------
    # Command building
    # ------------------------------------------------------------------

    def build_command(self, source_url: str, output_args: List[str],
                      seek_seconds: Optional[float] = None,
                      duration_seconds: Optional[float] = None,
                      realtime: bool = False,
                      aligned_segments: bool = False) -> List[str]:
        s = self.settings
        cmd = [self.ffmpeg_path, "-hide_banner",
               "-loglevel", s.FFMPEG_LOG_LEVEL or "error"]

        if realtime:
            cmd.append("-re")

        # Input-level seeking (BEFORE -i)
        if seek_seconds is not None:
            cmd.extend(["-ss", f"{seek_seconds:.3f}"])

        cmd.extend([
            "-probesize", str(s.FFMPEG_PROBESIZE),
            "-analyzeduration", str(s.FFMPEG_ANALYZE_DURATION),
            "-i", source_url,
        ])

        if duration_seconds is not None:
            cmd.extend(["-t", f"{duration_seconds:g}"])

        cmd.extend(["-max_delay", str(s.FFMPEG_MAX_DELAY)])

        # Video + first audio only (drop subtitles, data streams)
        cmd.extend(["-map", "0:v:0", "-map", "0:a:0?",
                    "-map", "-0:s", "-map", "-0:d"])

        cmd.extend(self.codec_args(aligned_segments))
        cmd.extend(output_args)
        return cmd

    def codec_args(self, aligned_segments: bool = False) -> List[str]:
        """
        Encoder arguments for the configured codecs.

        With aligned_segments, transcoded output is pinned to a fixed profile,
        frame rate, GOP and audio layout so segments encoded by separate
        processes start on a keyframe and splice cleanly.
        """
        s = self.settings
        args = ["-c:v", s.VIDEO_CODEC]
        if s.VIDEO_CODEC != "copy":
            profile = s.VIDEO_PROFILE
            if aligned_segments:
                profile = profile or s.SEGMENT_VIDEO_PROFILE
            if profile:
                args.extend(["-profile:v", profile])
            if aligned_segments:
                gop = str(s.SEGMENT_GOP_SIZE)
                args.extend([
                    "-level:v", s.SEGMENT_VIDEO_LEVEL,
                    "-r", f"{s.SEGMENT_FRAME_RATE:g}",
                    "-g", gop,
                    "-keyint_min", gop,
                ])
            if s.VIDEO_BITRATE:
                args.extend(["-b:v", s.VIDEO_BITRATE])
            if s.FFMPEG_PRESET:
                args.extend(["-preset", s.FFMPEG_PRESET])
            if s.FFMPEG_CRF is not None:
                args.extend(["-crf", str(s.FFMPEG_CRF)])

        args.extend(["-c:a", s.AUDIO_CODEC])
        if s.AUDIO_CODEC != "copy" and aligned_segments:
            args.extend(["-ac", str(s.SEGMENT_AUDIO_CHANNELS),
                         "-ar", str(s.SEGMENT_AUDIO_SAMPLE_RATE)])
        if s.AUDIO_CODEC != "copy" and s.AUDIO_BITRATE:
            args.extend(["-b:a", s.AUDIO_BITRATE])
        return args

    @staticmethod
    def hls_output_args(playlist_path: str, segment_pattern: str,
                        segment_duration: float, live: bool,
                        list_size: int = 0) -> List[str]:
        """
        HLS muxer arguments.

        Live output keeps a sliding window of list_size segments and deletes
        older files; VOD output keeps every segment and finalizes the
        playlist with an end-list marker.
        """
        args = ["-f", "hls", "-hls_time", f"{segment_duration:g}"]
        if live:
            args.extend([
                "-hls_list_size", str(list_size),
                "-hls_flags", "delete_segments+append_list+omit_endlist+program_date_time",
                "-hls_playlist_type", "event",
            ])
        else:
            args.extend([
                "-hls_list_size", "0",
                "-hls_playlist_type", "vod",
                # temp_file: segments are written under a temporary name and renamed
                "-hls_flags", "independent_segments+temp_file",
            ])
        args.extend([
            "-hls_segment_type", "mpegts",
            "-hls_segment_filename", segment_pattern,
            playlist_path,
        ])
        return args

    @staticmethod
    def mpegts_pipe_args() -> List[str]:
        return ["-f", "mpegts", "-muxdelay", "0", "-muxpreload", "0", "pipe:1"]

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def start(self, cmd: List[str], label: str, pipe_stdout: bool = False) -> TranscodeJob:
        if self._closed:
            raise ServiceShuttingDownError()

        logger.info(f"Starting encoder {label}: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if pipe_stdout else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            logger.error(f"Failed to spawn encoder {label}: {e}")
            raise BuildFailedError(f"Failed to spawn ffmpeg: {e}")

        job = TranscodeJob(label, process)
        self.processes[job.pid] = job
        job._stderr_task = asyncio.create_task(job._log_stderr())
        asyncio.create_task(self._track_exit(job))
        logger.info(f"Encoder {label} started with PID {job.pid}")
        return job

    async def _track_exit(self, job: TranscodeJob):
        try:
            code = await job.process.wait()
            elapsed = time.time() - job.started_at
            logger.info(
                f"Encoder {job.label} (pid {job.pid}) exited with code {code} after {elapsed:.1f}s")
        finally:
            self.processes.pop(job.pid, None)

    async def terminate(self, job: Optional[TranscodeJob], grace: Optional[float] = None):
        """Stop a process: SIGTERM, wait up to grace seconds, then SIGKILL. Never raises."""
        if job is None:
            return
        if grace is None:
            grace = self.terminate_grace

        process = job.process
        try:
            if process.returncode is None:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=grace)
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Encoder {job.label} (pid {job.pid}) did not terminate gracefully, killing")
                    process.kill()
                    await process.wait()
        except ProcessLookupError:
            pass  # Process already dead
        except Exception as e:
            logger.error(f"Error terminating encoder {job.label}: {e}")
        finally:
            self.processes.pop(job.pid, None)

    def close(self):
        """Refuse new processes from now on."""
        self._closed = True

    async def terminate_all(self, grace: Optional[float] = None):
        jobs = list(self.processes.values())
        if not jobs:
            return
        logger.info(f"Terminating {len(jobs)} encoder processes")
        await asyncio.gather(*(self.terminate(job, grace) for job in jobs))

import asyncio
import sys

import pytest

from errors import BuildFailedError, ServiceShuttingDownError
from transcoder import TranscodeSupervisor


def python_cmd(code):
    return [sys.executable, "-c", code]


class TestCommandBuilding:
    def test_copy_codecs_skip_encoder_tuning(self, make_settings):
        supervisor = TranscodeSupervisor(make_settings(
            VIDEO_CODEC="copy", AUDIO_CODEC="copy", FFMPEG_PRESET="veryfast", FFMPEG_CRF=23))
        cmd = supervisor.build_command("http://src/file.mkv", ["out.ts"])

        assert cmd[0] == supervisor.ffmpeg_path
        assert cmd[cmd.index("-c:v") + 1] == "copy"
        assert cmd[cmd.index("-c:a") + 1] == "copy"
        for flag in ("-preset", "-crf", "-b:v", "-b:a", "-profile:v", "-re", "-ss", "-t"):
            assert flag not in cmd
        assert cmd[-1] == "out.ts"

    def test_transcoding_codecs_include_tuning(self, make_settings):
        supervisor = TranscodeSupervisor(make_settings(
            VIDEO_CODEC="libx264", VIDEO_PROFILE="high", VIDEO_BITRATE="3000k",
            FFMPEG_PRESET="veryfast", FFMPEG_CRF=21, AUDIO_CODEC="aac", AUDIO_BITRATE="160k"))
        args = supervisor.codec_args()

        assert args == [
            "-c:v", "libx264", "-profile:v", "high", "-b:v", "3000k",
            "-preset", "veryfast", "-crf", "21", "-c:a", "aac", "-b:a", "160k",
        ]

    def test_aligned_segments_pin_gop_frame_rate_and_audio(self, make_settings):
        supervisor = TranscodeSupervisor(make_settings(
            VIDEO_CODEC="libx264", VIDEO_PROFILE=None, VIDEO_BITRATE="3000k",
            AUDIO_CODEC="aac", AUDIO_BITRATE="160k",
            SEGMENT_GOP_SIZE=96, SEGMENT_FRAME_RATE=24.0))
        args = supervisor.codec_args(aligned_segments=True)

        assert args == [
            "-c:v", "libx264", "-profile:v", "high", "-level:v", "4.1",
            "-r", "24", "-g", "96", "-keyint_min", "96", "-b:v", "3000k",
            "-c:a", "aac", "-ac", "2", "-ar", "48000", "-b:a", "160k",
        ]
        assert "-g" not in supervisor.codec_args()

    def test_seek_and_duration_are_placed_around_input(self, make_settings):
        supervisor = TranscodeSupervisor(make_settings())
        cmd = supervisor.build_command(
            "http://src/file.mkv", supervisor.mpegts_pipe_args(),
            seek_seconds=8, duration_seconds=4.0, realtime=True)

        i_idx = cmd.index("-i")
        assert cmd[i_idx + 1] == "http://src/file.mkv"
        assert cmd.index("-re") < i_idx
        assert cmd[cmd.index("-ss") + 1] == "8.000"
        assert cmd.index("-ss") < i_idx
        assert cmd.index("-probesize") < i_idx
        assert cmd[cmd.index("-t") + 1] == "4"
        assert cmd.index("-t") > i_idx
        assert cmd[-1] == "pipe:1"

    def test_stream_mapping_drops_subtitles_and_data(self, make_settings):
        cmd = TranscodeSupervisor(make_settings()).build_command("u", [])
        joined = " ".join(cmd)
        assert "-map 0:v:0 -map 0:a:0? -map -0:s -map -0:d" in joined

    def test_hls_output_args(self):
        live = TranscodeSupervisor.hls_output_args(
            "/c/index.m3u8", "/c/segment_%05d.ts", 4.0, live=True, list_size=6)
        assert live[live.index("-hls_list_size") + 1] == "6"
        assert "delete_segments" in live[live.index("-hls_flags") + 1]
        assert live[live.index("-hls_playlist_type") + 1] == "event"
        assert live[-1] == "/c/index.m3u8"

        vod = TranscodeSupervisor.hls_output_args(
            "/c/index.m3u8", "/c/segment_%05d.ts", 4.0, live=False)
        assert vod[vod.index("-hls_list_size") + 1] == "0"
        assert vod[vod.index("-hls_playlist_type") + 1] == "vod"
        assert "delete_segments" not in vod[vod.index("-hls_flags") + 1]
        assert vod[vod.index("-hls_segment_filename") + 1] == "/c/segment_%05d.ts"


class TestProcessLifecycle:
    @pytest.mark.asyncio
    async def test_successful_exit_is_deregistered(self, make_settings):
        supervisor = TranscodeSupervisor(make_settings())
        job = await supervisor.start(python_cmd("print('ok')"), label="ok", pipe_stdout=True)
        assert job.pid in supervisor.processes

        assert await job.check() == 0
        await asyncio.sleep(0.05)
        assert job.pid not in supervisor.processes

    @pytest.mark.asyncio
    async def test_non_zero_exit_raises_with_code(self, make_settings):
        supervisor = TranscodeSupervisor(make_settings())
        job = await supervisor.start(
            python_cmd("import sys; sys.stderr.write('Error opening input\\n'); sys.exit(3)"),
            label="fail")

        with pytest.raises(BuildFailedError) as exc:
            await job.check()
        assert exc.value.exit_code == 3
        assert exc.value.signal is None

    @pytest.mark.asyncio
    async def test_spawn_error_is_build_failure(self, make_settings):
        supervisor = TranscodeSupervisor(make_settings())
        with pytest.raises(BuildFailedError):
            await supervisor.start(["/nonexistent/ffmpeg-binary"], label="missing")
        assert len(supervisor) == 0

    @pytest.mark.asyncio
    async def test_terminate_is_graceful_when_process_obeys(self, make_settings):
        supervisor = TranscodeSupervisor(make_settings())
        job = await supervisor.start(python_cmd("import time; time.sleep(30)"), label="sleepy")

        await supervisor.terminate(job, grace=2.0)

        assert job.returncode is not None
        assert job.pid not in supervisor.processes

    @pytest.mark.asyncio
    async def test_terminate_force_kills_after_grace(self, make_settings):
        supervisor = TranscodeSupervisor(make_settings())
        code = (
            "import signal, sys, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "sys.stdout.write('ready\\n'); sys.stdout.flush()\n"
            "time.sleep(30)\n"
        )
        job = await supervisor.start(python_cmd(code), label="stubborn", pipe_stdout=True)
        await job.process.stdout.readline()

        loop = asyncio.get_running_loop()
        started = loop.time()
        await supervisor.terminate(job, grace=0.3)

        assert loop.time() - started >= 0.3
        assert job.returncode == -9

    @pytest.mark.asyncio
    async def test_terminate_all_and_close(self, make_settings):
        supervisor = TranscodeSupervisor(make_settings())
        jobs = [await supervisor.start(python_cmd("import time; time.sleep(30)"), label=f"j{i}")
                for i in range(3)]
        assert len(supervisor) == 3

        supervisor.close()
        await supervisor.terminate_all(grace=1.0)

        assert all(job.returncode is not None for job in jobs)
        assert len(supervisor) == 0
        with pytest.raises(ServiceShuttingDownError):
            await supervisor.start(python_cmd("pass"), label="late")

    @pytest.mark.asyncio
    async def test_terminate_of_exited_process_does_not_raise(self, make_settings):
        supervisor = TranscodeSupervisor(make_settings())
        job = await supervisor.start(python_cmd("pass"), label="quick")
        await job.wait()
        await supervisor.terminate(job)
        await supervisor.terminate(None)

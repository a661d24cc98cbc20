import os
import stat
import sys
import tempfile
from unittest.mock import AsyncMock, Mock

import pytest

# Required settings must exist before config is imported
os.environ.setdefault("PLEX_BASE_URL", "http://plex.test:32400")
os.environ.setdefault("PLEX_TOKEN", "test-token")
os.environ.setdefault("STREAM_CACHE_DIR", os.path.join(
    tempfile.gettempdir(), "plex-hls-server-tests"))

# Add src to path so we can import our modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from config import settings  # noqa: E402

FAKE_FFMPEG = os.path.join(os.path.dirname(__file__), "fake_ffmpeg.py")


@pytest.fixture
def fake_ffmpeg(tmp_path):
    """Executable wrapper that runs the fake encoder with this interpreter."""
    wrapper = tmp_path / "ffmpeg"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_FFMPEG}" "$@"\n')
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(wrapper)


@pytest.fixture
def spawn_log(tmp_path, monkeypatch):
    """File the fake encoder appends one line to per spawn."""
    path = tmp_path / "spawns.log"
    monkeypatch.setenv("FAKE_FFMPEG_LOG", str(path))

    def count():
        if not path.exists():
            return 0
        return len(path.read_text().splitlines())

    return count


@pytest.fixture
def make_settings(tmp_path, fake_ffmpeg):
    def _make(**overrides):
        values = {
            "STREAM_CACHE_DIR": str(tmp_path / "cache"),
            "FFMPEG_PATH": fake_ffmpeg,
            "HLS_SEGMENT_DURATION": 4.0,
            "PROCESS_TERMINATE_GRACE": 1.0,
            "PLAYLIST_WAIT_TIMEOUT": 5.0,
            "PLAYLIST_POLL_INTERVAL": 0.05,
            "SESSION_TTL": 60.0,
            "SESSION_SWEEP_INTERVAL": 60.0,
        }
        values.update(overrides)
        return settings.model_copy(update=values)
    return _make


@pytest.fixture
def plex_client():
    """Media library client stub: asset duration 10s, fixed source URL."""
    client = Mock()
    client.get_metadata = AsyncMock(return_value={
        "ratingKey": "42",
        "duration": 10000,
        "thumb": "/library/metadata/42/thumb/1",
        "art": "/library/metadata/42/art/1",
    })
    client.get_primary_part_stream_url = AsyncMock(
        return_value="http://plex.test:32400/library/parts/1/file.mkv?X-Plex-Token=test-token")
    return client

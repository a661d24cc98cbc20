"""
HLS playlist synthesis and rewriting.

Synthesized playlists are VOD-type manifests computed from the asset
duration; rewritten playlists come from the encoder and only have their
bare segment file names pointed at the public segment route.
"""

import math
import re
import logging

import m3u8

from paths import segment_name

logger = logging.getLogger(__name__)

PUBLIC_ROUTE_PREFIX = "/stream/movies"
MIN_LAST_SEGMENT_SECONDS = 0.1

_BARE_MEDIA_FILE_RE = re.compile(r'^[a-zA-Z0-9_.-]+\.(ts|key)$', re.IGNORECASE)


def public_segment_url(asset_id: str, name: str) -> str:
    return f"{PUBLIC_ROUTE_PREFIX}/{asset_id}/{name}"


def segment_count_for(total_seconds: float, segment_duration: float) -> int:
    return max(1, math.ceil(total_seconds / segment_duration))


def synthesize_playlist(asset_id: str, total_seconds: float, segment_duration: float) -> str:
    """Build a complete VOD manifest for an asset of the given duration."""
    target_duration = math.ceil(segment_duration)
    count = segment_count_for(total_seconds, segment_duration)

    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{target_duration}",
        "#EXT-X-MEDIA-SEQUENCE:0",
        "#EXT-X-PLAYLIST-TYPE:VOD",
    ]
    for index in range(count):
        if index == count - 1:
            remaining = total_seconds - segment_duration * index
            duration = max(remaining, MIN_LAST_SEGMENT_SECONDS)
        else:
            duration = segment_duration
        lines.append(f"#EXTINF:{duration:.3f},")
        lines.append(public_segment_url(asset_id, segment_name(index)))

    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines)


def rewrite_playlist(asset_id: str, raw: str) -> str:
    """Prefix bare .ts/.key file names with the asset's public route."""
    base_path = f"{PUBLIC_ROUTE_PREFIX}/{asset_id}/"
    rewritten = []
    for line in raw.split("\n"):
        stripped = line.strip()
        if stripped and not stripped.startswith("#") and _BARE_MEDIA_FILE_RE.match(stripped):
            rewritten.append(f"{base_path}{stripped}")
        else:
            rewritten.append(line)
    return "\n".join(rewritten)


def _parse(text: str):
    try:
        return m3u8.loads(text)
    except Exception as e:
        logger.debug(f"Unparseable playlist: {e}")
        return None


def count_ready_segments(text: str) -> int:
    """Number of segment entries an encoder-written playlist currently lists."""
    playlist = _parse(text)
    if playlist is None:
        return 0
    return len(playlist.segments)


def is_complete_playlist(text: str) -> bool:
    """True once the playlist carries the end-list marker."""
    playlist = _parse(text)
    return bool(playlist is not None and playlist.is_endlist)

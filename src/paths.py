"""
Segment naming and safe path resolution inside per-asset cache directories.
"""

import os
import re
import logging
from typing import List, Optional

from errors import InvalidRequestError

logger = logging.getLogger(__name__)

SEGMENT_NAME_RE = re.compile(r'^segment_(\d{5})\.ts$')
ASSET_ID_RE = re.compile(r'^[A-Za-z0-9_-]+$')

PLAYLIST_NAME = "index.m3u8"
# Pattern handed to the encoder for segment files
SEGMENT_PATTERN = "segment_%05d.ts"


def segment_name(index: int) -> str:
    return f"segment_{index:05d}.ts"


def segment_index(name: Optional[str]) -> Optional[int]:
    """Return the numeric index of a segment name, or None if it does not match."""
    if not name:
        return None
    match = SEGMENT_NAME_RE.match(name)
    if not match:
        return None
    return int(match.group(1))


def _is_inside(directory: str, candidate: str) -> bool:
    directory = os.path.realpath(directory)
    candidate = os.path.realpath(candidate)
    return candidate.startswith(directory + os.sep)


def cache_dir_for(root: str, asset_id: str) -> str:
    """Resolve the cache directory for an asset under the given root."""
    if not asset_id or not ASSET_ID_RE.match(asset_id):
        raise InvalidRequestError("Invalid asset id")
    root = os.path.abspath(root)
    path = os.path.join(root, asset_id)
    if not _is_inside(root, path):
        raise InvalidRequestError("Invalid asset id")
    return path


def resolve_segment_path(cache_dir: str, name: str) -> Optional[str]:
    """
    Resolve a segment name to an absolute path inside cache_dir.

    Returns None when the name does not match segment_NNNNN.ts or when the
    resolved path escapes cache_dir (for example through a symlink planted
    in the directory).
    """
    if segment_index(name) is None:
        return None

    cache_dir = os.path.abspath(cache_dir)
    resolved = os.path.abspath(os.path.join(cache_dir, name))
    if not _is_inside(cache_dir, resolved):
        logger.warning(
            f"Rejected segment path outside cache dir: {name} -> {resolved}")
        return None
    return resolved


def require_segment_path(cache_dir: str, name: str) -> str:
    """Like resolve_segment_path, but raises InvalidRequestError instead of returning None."""
    if segment_index(name) is None:
        raise InvalidRequestError("Invalid segment name")
    path = resolve_segment_path(cache_dir, name)
    if path is None:
        raise InvalidRequestError("Invalid segment path")
    return path


def list_segments(cache_dir: str) -> List[str]:
    """Sorted segment file names currently present in cache_dir."""
    try:
        entries = os.listdir(cache_dir)
    except FileNotFoundError:
        return []
    return sorted(name for name in entries if SEGMENT_NAME_RE.match(name))

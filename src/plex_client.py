"""
Minimal async client for the remote media library (Plex HTTP API).

Only what the delivery engine needs: item metadata, the playable source URL
of an item's primary part, and artwork streams.
"""

import math
import logging
from typing import Any, Dict, Optional
from urllib.parse import urljoin, urlparse, parse_qsl, urlencode, urlunparse

import httpx

from errors import UpstreamMetadataError

logger = logging.getLogger(__name__)

TOKEN_PARAM = "X-Plex-Token"


def resolve_duration_seconds(metadata: Optional[Dict[str, Any]], fallback: float) -> float:
    """
    Duration of an item in seconds.

    The library reports milliseconds on the item, its first media, or that
    media's first part; the first finite value wins, otherwise fallback.
    """
    metadata = metadata or {}
    media = (metadata.get("Media") or [{}])[0] or {}
    part = (media.get("Part") or [{}])[0] or {}

    for holder in (metadata, media, part):
        for key in ("Duration", "duration"):
            raw = holder.get(key)
            if raw is None:
                continue
            try:
                value = float(raw)
            except (TypeError, ValueError):
                continue
            if math.isfinite(value):
                return value / 1000.0
    return fallback


class PlexClient:
    def __init__(self, base_url: str, token: str, timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        if not base_url or not token:
            raise ValueError("PlexClient requires a base URL and a token")
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.http_client = httpx.AsyncClient(
            base_url=self.base_url,
            params={TOKEN_PARAM: token},
            headers={"Accept": "application/json"},
            timeout=httpx.Timeout(timeout, connect=10.0),
            follow_redirects=True,
            transport=transport,
        )

    async def aclose(self):
        await self.http_client.aclose()

    def normalize_url(self, maybe_absolute: Optional[str]) -> str:
        """Make a part key absolute and ensure it carries the access token."""
        if not maybe_absolute:
            raise UpstreamMetadataError("Media part is missing a playback URL")

        if maybe_absolute.startswith("http"):
            target = maybe_absolute
        else:
            target = urljoin(self.base_url + "/", maybe_absolute.lstrip('/'))

        parsed = urlparse(target)
        query = parse_qsl(parsed.query, keep_blank_values=True)
        if not any(k == TOKEN_PARAM for k, _ in query):
            query.append((TOKEN_PARAM, self.token))
        return urlunparse(parsed._replace(query=urlencode(query)))

    async def get_metadata(self, asset_id: str) -> Dict[str, Any]:
        try:
            response = await self.http_client.get(f"/library/metadata/{asset_id}")
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch metadata for {asset_id}: {e}")
            raise UpstreamMetadataError(f"Media library request failed: {e}")
        except ValueError as e:
            logger.error(f"Invalid metadata payload for {asset_id}: {e}")
            raise UpstreamMetadataError("Media library returned invalid JSON")

        items = (data.get("MediaContainer") or {}).get("Metadata") or []
        if not items:
            logger.error(f"Media {asset_id} not found in library")
            raise UpstreamMetadataError("Media not found")
        return items[0]

    async def get_primary_part_stream_url(self, asset_id: str) -> str:
        metadata = await self.get_metadata(asset_id)
        media = (metadata.get("Media") or [None])[0] or {}
        part = (media.get("Part") or [None])[0] or {}
        key = part.get("key") or part.get("file")
        if not key:
            raise UpstreamMetadataError("Unable to resolve media part")
        return self.normalize_url(key)

    async def open_asset_stream(self, path: str) -> httpx.Response:
        """
        Open a streamed GET for a library asset path (artwork).

        The caller owns the returned response and must aclose() it.
        """
        request = self.http_client.build_request("GET", path, headers={"Accept": "*/*"})
        response = await self.http_client.send(request, stream=True)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError:
            await response.aclose()
            raise
        return response

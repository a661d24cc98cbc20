from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.responses import (StreamingResponse, FileResponse, JSONResponse,
                               PlainTextResponse, Response)
from fastapi.middleware.cors import CORSMiddleware
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
import logging
import os

import httpx

from config import settings, VERSION
from errors import StreamError, NotReadyError, SegmentNotFoundError
from plex_client import PlexClient
from providers import StreamProvider, create_provider
from transcoder import TranscodeSupervisor

# Set up logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

PLAYLIST_MEDIA_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_MEDIA_TYPE = "video/mp2t"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    logger.info(f"⚡️ hls server starting up in '{settings.STREAM_MODE}' mode...")
    plex_client = PlexClient(
        settings.PLEX_BASE_URL, settings.PLEX_TOKEN, timeout=settings.PLEX_TIMEOUT)
    supervisor = TranscodeSupervisor(settings)
    provider = create_provider(settings, plex_client, supervisor)
    await provider.start()

    app.state.plex_client = plex_client
    app.state.supervisor = supervisor
    app.state.provider = provider
    app.state.online = True

    yield

    # Shutdown
    logger.info("hls server shutting down...")
    app.state.online = False
    try:
        await provider.shutdown()
    except Exception as e:
        logger.error(f"Failed to shut down stream provider: {e}")
    await plex_client.aclose()


app = FastAPI(
    title="hls server",
    version=VERSION,
    description="On-demand HLS delivery for media library assets",
    lifespan=lifespan,
)

# Configure CORS to allow all origins for streaming compatibility
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "HEAD", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)


def get_provider(request: Request) -> StreamProvider:
    provider = getattr(request.app.state, "provider", None)
    if provider is None:
        raise NotReadyError()
    return provider


def get_plex_client(request: Request) -> PlexClient:
    client = getattr(request.app.state, "plex_client", None)
    if client is None:
        raise NotReadyError()
    return client


@app.exception_handler(StreamError)
async def stream_error_handler(request: Request, exc: StreamError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


@app.get("/", response_class=PlainTextResponse)
async def root():
    return "hls server online"


@app.get("/health")
async def health_check(request: Request):
    if not getattr(request.app.state, "online", False):
        return JSONResponse(status_code=503, content={"healthy": False})
    return {"healthy": True}


@app.get("/stream/movies/{asset_id}/index.m3u8")
async def get_playlist(asset_id: str, provider: StreamProvider = Depends(get_provider)) -> Response:
    """Serve the HLS playlist for an asset from the active provider."""
    try:
        content = await provider.get_playlist(asset_id)
    except NotReadyError:
        return JSONResponse(status_code=503, content={"error": "Stream not ready"})

    logger.info(f"Serving playlist for {asset_id}")
    return Response(
        content=content,
        media_type=PLAYLIST_MEDIA_TYPE,
        headers={"Cache-Control": "no-store"}
    )


@app.get("/stream/movies/{asset_id}/{segment_name}")
async def get_segment(asset_id: str, segment_name: str,
                      provider: StreamProvider = Depends(get_provider)) -> Response:
    """Serve one MPEG-TS segment, building it first when the provider requires it."""
    source = await provider.open_segment(asset_id, segment_name)
    headers = {"Cache-Control": source.cache_control}

    if source.chunks is not None:
        logger.debug(f"Streaming live encode of {asset_id}/{segment_name}")
        return StreamingResponse(source.chunks, media_type=SEGMENT_MEDIA_TYPE, headers=headers)

    # Live encoders delete old segments; a file gone since the provider looked is a 404
    try:
        stat_result = os.stat(source.path)
    except FileNotFoundError:
        raise SegmentNotFoundError()
    return FileResponse(source.path, media_type=SEGMENT_MEDIA_TYPE, headers=headers,
                        stat_result=stat_result)


@app.get("/imgs/movies/{asset_id}/{image}")
async def get_artwork(asset_id: str, image: str,
                      plex_client: PlexClient = Depends(get_plex_client)) -> Response:
    """Proxy poster or background artwork for an asset from the media library."""
    try:
        metadata = await plex_client.get_metadata(asset_id)
    except StreamError as e:
        logger.error(f"Failed to load metadata for artwork {asset_id}/{image}: {e}")
        raise HTTPException(status_code=500, detail="Error serving artwork")

    artwork_path = None
    if "poster" in image:
        artwork_path = metadata.get("thumb")
    if "background" in image:
        artwork_path = metadata.get("art")

    if not artwork_path:
        raise HTTPException(status_code=404, detail=f"Image type not found: {image}")

    try:
        upstream = await plex_client.open_asset_stream(artwork_path)
    except httpx.HTTPError as e:
        logger.error(f"Failed to proxy artwork {asset_id}/{image}: {e}")
        raise HTTPException(status_code=500, detail="Error serving artwork")

    return StreamingResponse(
        upstream.aiter_bytes(),
        media_type=upstream.headers.get("content-type", "application/octet-stream"),
        background=BackgroundTask(upstream.aclose),
    )

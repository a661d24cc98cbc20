from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Application version
VERSION = "0.2.0"

STREAM_MODES = ("live", "vod", "jit", "hybrid")


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    PLEX_BASE_URL and PLEX_TOKEN have no default: a missing value fails
    validation when the module is imported, which stops the server.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 4000
    LOG_LEVEL: str = "info"
    RELOAD: bool = False

    # Remote media library
    PLEX_BASE_URL: str
    PLEX_TOKEN: str
    PLEX_TIMEOUT: float = 15.0

    # Delivery strategy: live, vod, jit or hybrid
    STREAM_MODE: str = "jit"
    STREAM_CACHE_DIR: str = "./.streams"

    # HLS layout
    HLS_SEGMENT_DURATION: float = 4.0
    # Live sliding window size (segments kept in the encoder playlist)
    HLS_WINDOW_SEGMENTS: int = 6

    # Encoder
    FFMPEG_PATH: str = "ffmpeg"
    FFMPEG_LOG_LEVEL: str = "error"
    FFMPEG_PRESET: Optional[str] = None
    FFMPEG_CRF: Optional[int] = None
    FFMPEG_MAX_DELAY: int = 50000
    FFMPEG_PROBESIZE: int = 20000000
    FFMPEG_ANALYZE_DURATION: int = 20000000
    VIDEO_CODEC: str = "copy"
    VIDEO_PROFILE: Optional[str] = None
    AUDIO_CODEC: str = "copy"
    VIDEO_BITRATE: Optional[str] = "3500k"
    AUDIO_BITRATE: Optional[str] = "128k"
    # JIT segments: fixed output parameters when transcoding (ignored for copy)
    SEGMENT_VIDEO_PROFILE: str = "high"
    SEGMENT_VIDEO_LEVEL: str = "4.1"
    SEGMENT_FRAME_RATE: float = 30.0
    SEGMENT_GOP_SIZE: int = 120
    SEGMENT_AUDIO_CHANNELS: int = 2
    SEGMENT_AUDIO_SAMPLE_RATE: int = 48000
    # Seconds between SIGTERM and SIGKILL when stopping an encoder
    PROCESS_TERMINATE_GRACE: float = 2.0

    # Live sessions
    SESSION_TTL: float = 120.0
    SESSION_SWEEP_INTERVAL: float = 30.0
    # How long to wait for the encoder to publish its first playlist
    PLAYLIST_WAIT_TIMEOUT: float = 15.0
    PLAYLIST_POLL_INTERVAL: float = 0.2

    # Used when library metadata carries no usable duration
    FALLBACK_DURATION_SECONDS: float = 600.0

    # Hybrid provider
    HYBRID_MIN_READY_SEGMENTS: int = 10
    HYBRID_SEGMENT_WAIT_TIMEOUT: float = 15.0
    HYBRID_SEGMENT_POLL_INTERVAL: float = 0.5
    # Serve a partial list once segments exist and this many polls have passed
    HYBRID_PARTIAL_GRACE_POLLS: int = 3
    HYBRID_SEGMENT_READ_TIMEOUT: float = 10.0
    HYBRID_SEGMENT_READ_POLL: float = 0.2

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",
        extra="ignore"
    )

    @field_validator('PLEX_BASE_URL')
    @classmethod
    def strip_trailing_slash(cls, v):
        v = v.strip().rstrip('/')
        if not v:
            raise ValueError("PLEX_BASE_URL cannot be empty")
        return v

    @field_validator('PLEX_TOKEN')
    @classmethod
    def require_token(cls, v):
        if not v or not v.strip():
            raise ValueError("PLEX_TOKEN cannot be empty")
        return v.strip()

    @field_validator('STREAM_MODE')
    @classmethod
    def validate_stream_mode(cls, v):
        v = v.strip().lower()
        if v not in STREAM_MODES:
            raise ValueError(
                f"STREAM_MODE must be one of {', '.join(STREAM_MODES)}")
        return v

    @field_validator('HLS_SEGMENT_DURATION')
    @classmethod
    def validate_segment_duration(cls, v):
        if v <= 0:
            raise ValueError("HLS_SEGMENT_DURATION must be positive")
        return v


# Global settings instance
settings = Settings()

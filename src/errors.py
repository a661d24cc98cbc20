"""
Error types raised by the delivery engine.

Every error carries the HTTP status it maps to at the API boundary, so
providers can raise them directly and the route layer only translates.
"""

from typing import Optional


class StreamError(Exception):
    status_code = 500
    detail = "Internal error"

    def __init__(self, detail: Optional[str] = None):
        if detail is not None:
            self.detail = detail
        super().__init__(self.detail)


class InvalidRequestError(StreamError):
    """Malformed segment name or asset id. Never touches the filesystem."""
    status_code = 400
    detail = "Invalid segment name"


class SegmentNotFoundError(StreamError):
    status_code = 404
    detail = "Segment not found"


class NotReadyError(StreamError):
    """The provider cannot produce the resource yet; clients should retry."""
    status_code = 503
    detail = "Stream not ready"


class ServiceShuttingDownError(StreamError):
    status_code = 503
    detail = "Service is shutting down"


class UpstreamMetadataError(StreamError):
    """The media library lookup failed or the asset does not exist."""
    status_code = 502
    detail = "Media library request failed"


class BuildFailedError(StreamError):
    """The encoder could not be spawned or exited with a non-zero code."""
    status_code = 500
    detail = "Transcode failed"

    def __init__(self, detail: Optional[str] = None,
                 exit_code: Optional[int] = None,
                 signal: Optional[int] = None):
        super().__init__(detail)
        self.exit_code = exit_code
        self.signal = signal

"""Error taxonomy for the edge proxy.

Components raise these; only the request handler turns them into HTTP
responses.
"""

from enum import Enum
from typing import Optional


class ErrorType(str, Enum):
    """Failure kinds surfaced to clients and logs."""
    CONFIG_ERROR = "CONFIG_ERROR"
    ACCESS_DENIED = "ACCESS_DENIED"
    INVALID_SHA256 = "INVALID_SHA256"
    REQUEST_TIMEOUT = "REQUEST_TIMEOUT"
    FETCH_EXCEPTION = "FETCH_EXCEPTION"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ProxyError(Exception):
    """Base error carrying the HTTP status it maps to."""

    error_type = ErrorType.UNKNOWN_ERROR
    status_code = 500

    def __init__(self, message: str, headers: Optional[dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.headers = headers or {}


class ConfigError(ProxyError):
    """Raw configuration failed validation."""

    error_type = ErrorType.CONFIG_ERROR
    status_code = 500


class InvalidDigestError(ProxyError):
    """A blob digest in the request path is malformed."""

    error_type = ErrorType.INVALID_SHA256
    status_code = 400


class UpstreamTimeoutError(ProxyError):
    """Every upstream attempt timed out."""

    error_type = ErrorType.REQUEST_TIMEOUT
    status_code = 504

    def __init__(self, message: str, retry_after: int = 30):
        super().__init__(message, headers={"Retry-After": str(retry_after)})
        self.retry_after = retry_after

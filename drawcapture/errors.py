"""
Typed error taxonomy for the capture pipeline.

Every error carries a stable reason code plus context so callers (and the
CLI) can surface a structured failure instead of a bare traceback.
"""

from typing import Any, Dict, Optional


class CaptureError(Exception):
    """Base class for all pipeline errors."""

    code = "CAPTURE_ERROR"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ok': False,
            'code': self.code,
            'message': self.message,
            'context': self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(CaptureError):
    """Malformed date/hour, unknown lottery, missing source configuration."""
    code = "VALIDATION_ERROR"


class ConfigError(CaptureError):
    code = "CONFIG_INVALID"


class UpstreamError(CaptureError):
    """Base for failures talking to the upstream provider."""
    code = "UPSTREAM_ERROR"


class TransientUpstreamError(UpstreamError):
    """Timeouts, connection resets, HTTP 429 and 5xx. Safe to retry."""
    code = "UPSTREAM_TRANSIENT"
    retryable = True


class UpstreamHTTPError(UpstreamError):
    """Non-retryable HTTP status from the provider."""
    code = "UPSTREAM_HTTP_ERROR"


class MalformedPayloadError(UpstreamError):
    code = "MALFORMED_PAYLOAD"


class FutureDateError(CaptureError):
    """Requested date is after today in the operating timezone."""
    code = "FUTURE_DATE"


class LockContention(CaptureError):
    """Another run holds a live lock for the same lottery."""
    code = "LOCK_HELD"


class StateStoreError(CaptureError):
    """Unreadable state value or a state mutex that never frees up."""
    code = "STATE_STORE_ERROR"

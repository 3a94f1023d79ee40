"""Exception hierarchy for trackgate.

Administrative errors (validation, not found) surface to callers unchanged.
Admission denials and rate-limit rejections are normally carried as results on
the request path; the exception types exist for callers that want to raise.
"""

from __future__ import annotations

from typing import Any


class TrackgateError(Exception):
    """Base exception for all trackgate errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize trackgate error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ValidationError(TrackgateError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class BencodeError(ValidationError):
    """Bencode encoding/decoding errors."""


class NotFoundError(TrackgateError):
    """Requested entity does not exist."""


class SecurityError(TrackgateError):
    """Security-related errors."""


class RateLimitExceeded(SecurityError):
    """A rate limit policy rejected the request."""

    def __init__(
        self,
        message: str,
        policy: str,
        retry_after: float = 0.0,
        details: dict[str, Any] | None = None,
    ):
        """Initialize rate limit error."""
        super().__init__(message, details)
        self.policy = policy
        self.retry_after = retry_after


class AdmissionDenied(SecurityError):
    """The admission filter denied the request."""

    def __init__(
        self,
        message: str,
        kind: str = "denied",
        details: dict[str, Any] | None = None,
    ):
        """Initialize admission error."""
        super().__init__(message, details)
        self.kind = kind


class TransportError(TrackgateError):
    """Transport lifecycle errors."""


class TransportStartupError(TransportError):
    """A transport could not bind its listener."""


class TransportShutdownError(TransportError):
    """A transport failed to release its listener cleanly."""


class TransportStateError(TransportError):
    """Illegal transport state transition."""

"""
Error taxonomy for the Heylock client.

Every error carries the name of the operation that raised it and renders as
"<operation> failed: <message>", so callers can tell which call broke without
inspecting tracebacks. `code` mirrors the error codes used by the service.
"""

from __future__ import annotations

from typing import Optional


class HeylockError(RuntimeError):
    """Base class for every error raised by the client."""

    code = "INTERNAL_ERROR"

    def __init__(self, operation: str, message: str, *, status_code: Optional[int] = None):
        self.operation = operation
        self.message = message
        self.status_code = status_code
        super().__init__(f"{operation} failed: {message}")

    def reraise_as(self, operation: str) -> "HeylockError":
        """Same error class, prefixed with an outer operation name."""
        return type(self)(operation, str(self), status_code=self.status_code)


class InvalidArgumentError(HeylockError, ValueError):
    """Malformed caller input, or a 400 from the service."""

    code = "INVALID_ARGUMENT"


class IndexOutOfRangeError(InvalidArgumentError, IndexError):
    code = "INDEX_OUT_OF_RANGE"


class NotInitializedError(HeylockError):
    code = "NOT_INITIALIZED"


class AuthenticationError(HeylockError):
    """Invalid agent key, from verification or any 401."""

    code = "UNAUTHORIZED"


class QuotaExceededError(HeylockError):
    """Plan limit reached; the tracked usage counter is at or below zero."""

    code = "QUOTA_EXCEEDED"


class RateLimitedError(HeylockError):
    """429 while quota is still left: transient rate limiting."""

    code = "RATE_LIMITED"


class ServiceError(HeylockError):
    code = "SERVICE_ERROR"


class UpstreamServiceError(ServiceError):
    """502: a dependency of the service failed."""

    code = "UPSTREAM_ERROR"


class ProtocolError(HeylockError):
    """A 200 response whose body does not have the expected shape."""

    code = "PROTOCOL_ERROR"


class ConnectionFailedError(HeylockError):
    """Transport failure or an unclassified HTTP status."""

    code = "CONNECTION_FAILED"

"""Typed failures surfaced by the recommendation service."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Tag describing why a request could not be served."""

    RATE_LIMITED = "rate_limited"
    UPSTREAM_FAILURE = "upstream_failure"
    CONFIG_ERROR = "config_error"
    INVALID_INPUT = "invalid_input"


class StreamPicksError(Exception):
    """Base class for failures that map onto an HTTP error response."""

    kind: ErrorKind = ErrorKind.UPSTREAM_FAILURE
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, str]:
        return {"error": self.message, "kind": self.kind.value}


class RateLimitedError(StreamPicksError):
    kind = ErrorKind.RATE_LIMITED
    status_code = 429

    def __init__(self, message: str = "Too many requests. Please wait a minute."):
        super().__init__(message)


class UpstreamError(StreamPicksError):
    """A catalog or model call failed, timed out or returned garbage."""

    kind = ErrorKind.UPSTREAM_FAILURE
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        service: str,
        upstream_status: int | None = None,
    ):
        super().__init__(message)
        self.service = service
        self.upstream_status = upstream_status

    def __str__(self) -> str:
        if self.upstream_status is not None:
            return f"{self.service} {self.upstream_status}: {self.message}"
        return f"{self.service}: {self.message}"


class ConfigurationError(StreamPicksError):
    kind = ErrorKind.CONFIG_ERROR
    status_code = 500


class InvalidInputError(StreamPicksError):
    kind = ErrorKind.INVALID_INPUT
    status_code = 400

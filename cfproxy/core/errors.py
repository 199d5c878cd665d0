"""Application-level exception types.

This module defines the proxy's error taxonomy so failures are logged and
answered consistently. Messages on these errors are safe to return to
callers: they never carry upstream addresses, raw exception text, the
caller's identity or the injected credential.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability.

    Details are logged, never returned to callers.
    """

    code: str
    message: str
    hint: str
    http_status: int
    retry_after: float
    cause: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    http_status: ClassVar[int] = 500

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ConfigError(AppError):
    """Raised when startup configuration is missing or invalid."""


class MalformedRequestError(AppError):
    """Raised when an inbound request cannot be mapped onto the upstream."""

    http_status = 400


class ForwardError(AppError):
    """Raised when the upstream round trip fails."""

    http_status = 502


class UpstreamUnreachableError(ForwardError):
    """Connection refused, DNS or TLS failure, or a broken connection."""


class UpstreamTimeoutError(ForwardError):
    """The upstream did not answer within the configured timeout."""

    http_status = 504


class ClientDisconnectedError(ForwardError):
    """The caller went away before the upstream answered."""

    http_status = 499

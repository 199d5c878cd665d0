"""Rate limiter interfaces.

The HTTP layer depends on this abstraction (not the concrete implementation)
so storage can change without touching the request path.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a single admission check.

    Attributes:
        allowed: Whether the request is admitted.
        limit: Max admissions per window.
        remaining: Admissions left in the current window (0 when blocked).
        retry_after_seconds: Suggested wait time in seconds when blocked.
    """

    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int | None


class AbstractRateLimiter(ABC):
    """Interface for rate limiters."""

    @abstractmethod
    def consume(self, key: str) -> RateLimitResult:
        """Decide whether one more request from ``key`` is admitted.

        Args:
            key: Client identity (normally the source address).

        Returns:
            RateLimitResult describing the decision.
        """
        raise NotImplementedError

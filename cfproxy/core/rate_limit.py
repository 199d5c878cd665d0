"""Rate limiting dependency for the proxy route.

This module wires the limiter adapter into the HTTP layer. The limiter
lives on ``app.state`` so every app instance (and every test) owns its
own store.

Identity strategy:
- The transport-layer source address by default.
- The last ``X-Forwarded-For`` hop, only when ``TRUST_FORWARDED_FOR`` says
  a trusted front-end proxy appends it.
"""

from __future__ import annotations

import hashlib
import logging

from fastapi import HTTPException, Request, status

from cfproxy.adapters.rate_limit.base import AbstractRateLimiter

logger = logging.getLogger(__name__)


def get_rate_limiter(request: Request) -> AbstractRateLimiter:
    """Return the limiter owned by the running application."""

    return request.app.state.rate_limiter


def client_identity(request: Request, *, trust_forwarded_for: bool = False) -> str:
    """Derive the rate limit identity for the current request.

    Args:
        request: FastAPI request.
        trust_forwarded_for: Whether the nearest X-Forwarded-For hop may be
            used instead of the socket peer.

    Returns:
        str: Identity key.
    """

    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        if hops:
            return hops[-1]

    return request.client.host if request.client else "unknown"


def _hash_identity(identity: str) -> str:
    """Hash the identity for logging without exposing addresses."""
    return hashlib.sha256(identity.encode()).hexdigest()[:16]


async def enforce_rate_limit(request: Request) -> None:
    """FastAPI dependency enforcing per-identity admission.

    Consumes one admission from the caller's window. Denials raise HTTP 429
    with a fixed body that reveals neither the identity nor counter state.

    Raises:
        HTTPException: 429 Too Many Requests when the limit is reached.
    """

    proxy_settings = request.app.state.settings.proxy
    identity = client_identity(
        request, trust_forwarded_for=proxy_settings.trust_forwarded_for
    )
    request.state.client_identity = identity

    result = get_rate_limiter(request).consume(identity)
    if result.allowed:
        return

    retry_after = result.retry_after_seconds or 1
    logger.warning(
        "rate_limit.exceeded",
        extra={
            "client_hash": _hash_identity(identity),
            "limit": result.limit,
            "window_s": proxy_settings.rate_limit_window_seconds,
            "retry_after_s": retry_after,
        },
    )

    headers: dict[str, str] = {}
    if proxy_settings.rate_limit_include_headers:
        headers["Retry-After"] = str(retry_after)

    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Rate limit exceeded. Try again later.",
        headers=headers or None,
    )

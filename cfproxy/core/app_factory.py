from __future__ import annotations

"""Application factory for the proxy.

Centralizes app construction (state, middleware, handlers, routers) so tests
can build isolated instances with their own limiter and upstream transport.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from fastapi import FastAPI

from cfproxy.adapters.rate_limit import AbstractRateLimiter, build_rate_limiter
from cfproxy.api.routes import proxy_router
from cfproxy.core.config import Settings
from cfproxy.core.exception_handlers import setup_exception_handlers
from cfproxy.core.middleware import request_id_middleware
from cfproxy.services.forwarder import Forwarder, create_upstream_client


def create_app(
    settings: Settings,
    *,
    rate_limiter: AbstractRateLimiter | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create and configure the proxy application.

    Args:
        settings: Validated settings, loaded once at startup.
        rate_limiter: Optional limiter instance; built from settings if omitted.
        transport: Optional upstream transport override.

    Returns:
        Configured FastAPI app. The upstream client is opened by its lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        async with create_upstream_client(settings.proxy, transport=transport) as client:
            app.state.forwarder = Forwarder.from_settings(settings.proxy, client)
            yield

    # No docs/openapi routes: every path belongs to the upstream
    app = FastAPI(
        title="CurseForge API proxy",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    if rate_limiter is None:
        rate_limiter = build_rate_limiter(settings.proxy)
    app.state.rate_limiter = rate_limiter

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(proxy_router)

    return app

from __future__ import annotations

import logging
import time

from fastapi import APIRouter, Depends, Request, Response

from cfproxy.core.rate_limit import enforce_rate_limit
from cfproxy.services.forwarder import Forwarder

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

router = APIRouter()


def get_forwarder(request: Request) -> Forwarder:
    """Return the forwarder opened by the application lifespan."""

    return request.app.state.forwarder


@router.api_route(
    "/{path:path}",
    methods=PROXY_METHODS,
    dependencies=[Depends(enforce_rate_limit)],
    include_in_schema=False,
)
async def proxy(
    request: Request,
    forwarder: Forwarder = Depends(get_forwarder),
) -> Response:
    """Forward any admitted request to the upstream and relay its response.

    Args:
        request: Inbound request, forwarded verbatim apart from ``host`` and
            the injected credential.
        forwarder: Shared forwarder.

    Returns:
        Response: Streaming relay of the upstream response.
    """

    start = time.perf_counter()
    response = await forwarder.forward(request)

    logger.info(
        "proxy.forwarded",
        extra={
            "client": getattr(request.state, "client_identity", None),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
        },
    )
    return response

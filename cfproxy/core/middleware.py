"""HTTP middleware for request ID correlation.

Every inbound request gets a correlation ID stored in contextvars so all
log lines emitted while handling it can be tied together. The inbound
header, when present, is reused; otherwise a UUID4 is generated.

Unlike a regular API, the proxy does not stamp the ID onto the response:
upstream responses are relayed without additions.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import uuid

from fastapi import Request, Response

from cfproxy.core.logging import clear_request_id, set_request_id


async def request_id_middleware(request: Request, call_next) -> Response:
    """Bind a request ID to the logging context for the request's lifetime.

    The header name comes from ``LOG_REQUEST_ID_HEADER`` via the settings
    stored on ``app.state``.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The untouched response from the next handler.
    """

    header_name = request.app.state.settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    try:
        return await call_next(request)
    finally:
        clear_request_id()

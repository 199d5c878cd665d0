"""Global exception handlers for consistent error responses.

Design:
- AppError subclasses -> their ``http_status`` (400, 502, 504)
- ClientDisconnectedError -> empty 499, nobody is listening anymore
- Unexpected Exception -> generic 500 (safety net)
- Bodies carry only a code, a fixed message and the request_id; upstream
  addresses, exception text and the credential never reach the caller
"""

import logging

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from cfproxy.core.errors import AppError, ClientDisconnectedError
from cfproxy.core.logging import get_request_id

logger = logging.getLogger(__name__)


async def app_error_handler(request: Request, exc: AppError) -> Response:
    """Handle application errors with a consistent JSON format.

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with the error's status code.
    """
    if isinstance(exc, ClientDisconnectedError):
        logger.info(
            "proxy.client_disconnected",
            extra={
                "method": request.method,
                "path": request.url.path,
            },
        )
        return Response(status_code=exc.http_status)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "status_code": exc.http_status,
            "cause": (exc.details or {}).get("cause"),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=exc.http_status,
        content={
            "error": {
                "code": exc.code,
                "message": exc.message,
                "request_id": get_request_id(),
            }
        },
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs the error type for debugging while returning a generic message.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with the FastAPI app.

    Example:
        >>> from fastapi import FastAPI
        >>> app = FastAPI()
        >>> setup_exception_handlers(app)
    """
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)

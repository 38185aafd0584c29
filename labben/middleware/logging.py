"""
Request logging middleware with correlation ID support.

Every request gets a short correlation ID, bound to the structlog context and
echoed in the X-Correlation-ID response header.

Never logs query strings: delivery links carry their bearer token there.
"""

import re
import secrets
import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

CORRELATION_HEADER = "X-Correlation-ID"
_CORRELATION_ID_RE = re.compile(r"^[0-9a-f]{8}$")


def generate_correlation_id() -> str:
    """Generate an 8-character correlation ID."""
    return secrets.token_hex(4)


def current_correlation_id() -> str | None:
    return structlog.contextvars.get_contextvars().get("correlation_id")


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs request_started / request_completed / request_failed with timing.

    An incoming X-Correlation-ID is reused when it has our format, so a
    dashboard request and the delivery it triggers can be tied together.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        incoming = request.headers.get(CORRELATION_HEADER, "")
        correlation_id = (
            incoming if _CORRELATION_ID_RE.match(incoming) else generate_correlation_id()
        )
        start_time = time.perf_counter()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        logger = structlog.get_logger()
        logger.info("request_started", method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error_type=type(e).__name__,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                exc_info=True,
            )
            raise

        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

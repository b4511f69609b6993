"""
FastAPI middleware for request correlation ID tracking.

Manual triggers arrive over HTTP; the request's correlation ID is logged with
the enqueue so an operator can follow one request to the task it created (or
to the in-flight task that absorbed it).
"""
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from fantasy_sync.core.logging import correlation_scope, get_logger

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Reads X-Correlation-ID (or generates one), exposes it as
    ``request.state.correlation_id`` and echoes it in the response.

    Usage:
        app.add_middleware(CorrelationIdMiddleware)
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or f"http-{uuid.uuid4().hex[:12]}"
        request.state.correlation_id = correlation_id

        with correlation_scope(correlation_id):
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
            if request.method != "GET":
                logger.info(
                    f"{request.method} {request.url.path} -> {response.status_code}",
                    extra={"method": request.method, "path": request.url.path, "status": response.status_code},
                )
            return response

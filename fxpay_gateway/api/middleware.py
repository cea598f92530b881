"""FastAPI middleware for request tracing and metrics"""

import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from fxpay_gateway.infrastructure.observability.metrics import request_duration_histogram

CORRELATION_HEADER = "X-Correlation-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tag each request with a fresh request ID and a correlation ID.

    The correlation ID is taken from the caller when present so a chain of
    services shares one identifier.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        correlation_id = request.headers.get(CORRELATION_HEADER) or request_id
        request.state.request_id = request_id
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record HTTP request metrics"""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        route = request.scope.get("route")
        request_duration_histogram.labels(
            method=request.method,
            endpoint=route.path if route is not None else request.url.path,
            status=response.status_code,
        ).observe(duration)

        return response

import time
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from ulid import ULID

from intent_payments.infrastructure.metrics import HTTP_REQUEST_DURATION, HTTP_REQUESTS_TOTAL


logger = structlog.get_logger()


REQUEST_ID_HEADER = "X-Request-Id"


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path if isinstance(path, str) else "unmatched"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a request id into the structlog context and records HTTP metrics."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(ULID())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, method=request.method, path=request.url.path)

        start_time = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.perf_counter() - start_time
            route = _route_label(request)
            HTTP_REQUEST_DURATION.labels(method=request.method, route=route).observe(duration)
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route, status_code=str(status_code)).inc()

        response.headers[REQUEST_ID_HEADER] = request_id
        return response

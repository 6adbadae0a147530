"""Request context middleware for structured logging."""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a request_id (and the route path) to structlog context vars for
    the lifetime of the request and echoes the id back in X-Request-ID.

    Billing failures are only traceable through this id, so an upstream
    X-Request-ID (from the edge proxy or the cron trigger) is reused when it
    is a valid UUID.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = _incoming_request_id(request) or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _incoming_request_id(request: Request) -> str | None:
    raw = request.headers.get(REQUEST_ID_HEADER)
    if not raw:
        return None
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        return None

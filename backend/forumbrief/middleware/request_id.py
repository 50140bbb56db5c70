"""Request ID middleware: reuses or generates an ID per request and binds it to structlog context."""

import time
import uuid
from contextvars import ContextVar

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


def _incoming_request_id(request: Request) -> str | None:
    rid = request.headers.get(REQUEST_ID_HEADER, "").strip()
    if not rid or len(rid) > MAX_REQUEST_ID_LENGTH or not rid.isprintable():
        return None
    return rid


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request ID to structlog context, echo it in X-Request-ID and time the request."""

    async def dispatch(self, request: Request, call_next):
        rid = _incoming_request_id(request) or str(uuid.uuid4())
        request_id_var.set(rid)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=rid)

        start = time.perf_counter()
        response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = rid
        # Handlers may set their own, more precise timing
        if "X-Response-Time" not in response.headers:
            response.headers["X-Response-Time"] = f"{(time.perf_counter() - start) * 1000:.0f}ms"
        return response

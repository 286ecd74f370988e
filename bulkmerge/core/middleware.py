"""Request-id middleware."""

from __future__ import annotations

from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from bulkmerge.core.logging import bind_context, log_context


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a unique request ID to every request/response and to the log context."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        token = bind_context(request_id=request_id, path=request.url.path)
        try:
            response: Response = await call_next(request)
        finally:
            log_context.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response

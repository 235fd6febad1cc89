"""
AssistQR Backend — Request ID Middleware
==========================================

What:  Assigns a correlation id to every request and returns it in the
       X-Request-ID response header.
Why:   One report fans out into many provider calls; the id ties every log
       line of that report back to the request that created it. Error
       bodies carry it too, so a bystander's screenshot is enough to find
       the logs.
How:   Reuses a client-supplied X-Request-ID, otherwise generates a short
       UUID, and stores it in a ContextVar that handlers and loggers read.
"""

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ContextVar, not threading.local: concurrent requests share one thread.
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Sets request_id_var and request.state.request_id for each request."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        request_id_var.set(rid)
        request.state.request_id = rid

        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

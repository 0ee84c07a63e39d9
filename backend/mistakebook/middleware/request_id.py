"""
MistakeBook Backend — Request ID Middleware
============================================

What:  Gives every request a short correlation id.
How:   Reuses the client's X-Request-ID when it sends a sane one, otherwise
       generates 8 hex chars. The id is stored in a ContextVar (read by
       the exception handlers and the access log), on request.state, and
       echoed in the X-Request-ID response header.

The batch endpoint runs several recognitions concurrently inside one
request; they all share the request's id, and each provider call adds
its own call id to its log lines.
"""

import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own id
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Client ids end up in log lines, so only short token-like values are accepted
_CLIENT_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assigns request ids and echoes them back to the client."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        client_id = request.headers.get("X-Request-ID", "")
        rid = client_id if _CLIENT_ID_RE.match(client_id) else new_request_id()

        request_id_var.set(rid)
        request.state.request_id = rid

        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

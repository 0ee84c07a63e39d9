"""
MistakeBook Backend — Access Log Middleware
============================================

What:  One log line per HTTP request: method, path, status, duration,
       request id and client address.
How:   Level follows the status class (5xx ERROR, 4xx WARNING, else INFO).
       GET /health is not logged; load balancers poll it constantly.

Request bodies are never logged: they carry the student's photos.

Typical durations:
    POST /api/ai/recognize        3-15s (one provider call, more on fallback)
    POST /api/ai/recognize/batch  grows with files / concurrency
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from mistakebook.middleware.request_id import request_id_var

logger = logging.getLogger("mistakebook.access")

SKIPPED_PATHS = {"/health"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request except the health probe."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in SKIPPED_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        status = response.status_code
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO

        client_ip = request.client.host if request.client else "unknown"
        rid = request_id_var.get("")
        logger.log(
            level,
            "%s %s %d %.1fms [%s] from %s",
            request.method, path, status, duration_ms, rid, client_ip,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return response

"""
Request middleware — correlation ids, caller context and access logging.

Every request gets an ``X-Request-ID`` (taken from the caller or minted) and
runs inside a log context holding that id and the ``X-User-ID`` of the
caller, so engine logs emitted while serving it can be traced back.
Rejections (4xx) are logged at WARNING since on this API they are mostly
refused alerts: rate limits, non-members responding, closed alerts.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from hosla.app.core.logging_config import log_context

logger = logging.getLogger(__name__)

# Probes and docs are not worth an access line
_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Adds X-Request-ID / X-Process-Time and logs one line per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path
        quiet = path.startswith(_QUIET_PREFIXES)

        with log_context(
            request_id=request_id,
            user_id=request.headers.get("X-User-ID"),
            method=request.method,
            endpoint=path,
        ):
            start = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception:
                logger.error(
                    "%s %s raised after %.1fms",
                    request.method, path, (time.perf_counter() - start) * 1000,
                    extra={"status_code": 500, "endpoint": path},
                )
                raise
            elapsed_ms = (time.perf_counter() - start) * 1000

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{elapsed_ms:.1f}ms"

            if not quiet or response.status_code >= 500:
                logger.log(
                    logging.WARNING if response.status_code >= 400 else logging.INFO,
                    "%s %s → %d (%.1fms)",
                    request.method, path, response.status_code, elapsed_ms,
                    extra={
                        "duration_ms": round(elapsed_ms, 1),
                        "status_code": response.status_code,
                        "endpoint": path,
                    },
                )
        return response

"""
Per-request correlation and access logging.

Every response carries ``X-Request-ID`` (echoed from the caller or
generated) and ``X-Process-Time``. Handlers may attach extra fields for
the access line with ``annotate_request``; the webhook route uses it to
record which channel posted and what ingestion did with the payload.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from unifychat.core.logging_config import reset_request_context, set_request_context

logger = logging.getLogger("unifychat.access")

# Probes and docs stay out of the access log
_UNLOGGED = ("/health/live", "/docs", "/redoc", "/openapi.json", "/favicon.ico")


def annotate_request(request: Request, **fields: Any) -> None:
    """Add fields to this request's access log line."""
    existing = getattr(request.state, "log_fields", None) or {}
    existing.update(fields)
    request.state.log_fields = existing


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path
        token = set_request_context(
            request_id=request_id, method=request.method, endpoint=path,
        )
        started = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "%s %s raised after %.1fms", request.method, path,
                    (time.perf_counter() - started) * 1000,
                )
                raise

            duration_ms = (time.perf_counter() - started) * 1000
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

            if path not in _UNLOGGED:
                fields = dict(getattr(request.state, "log_fields", None) or {})
                fields.update(duration_ms=round(duration_ms, 1), status_code=response.status_code)
                suffix = " ".join(f"{k}={v}" for k, v in fields.items() if k not in ("duration_ms", "status_code"))
                logger.log(
                    logging.WARNING if response.status_code >= 400 else logging.INFO,
                    "%s %s → %d (%.1fms)%s", request.method, path,
                    response.status_code, duration_ms, f" {suffix}" if suffix else "",
                    extra=fields,
                )
            return response
        finally:
            reset_request_context(token)

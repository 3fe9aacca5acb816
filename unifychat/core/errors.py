"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

Propagation rules:
    • ConfigurationError never leaves the adapter registry; the channel is
      simply reported as disabled.
    • TransportError is captured inside adapters into a failed SendResult.
    • MalformedInboundError is raised by extraction helpers only; adapters
      turn it into a ``None`` return.
    • NotFoundError / ValidationError / ChannelNotEnabledError surface at
      the HTTP layer.

Usage:
    from unifychat.core.errors import NotFoundError, register_error_handlers

    raise NotFoundError("Message", id="7f3a...")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from unifychat.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class UnifyChatError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(UnifyChatError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(UnifyChatError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class ConfigurationError(UnifyChatError):
    """Channel credentials missing or invalid (503)."""

    def __init__(self, channel: str, message: str = ""):
        super().__init__(
            message=f"Channel '{channel}' is misconfigured: {message}",
            status_code=503,
            error_code="CONFIGURATION_ERROR",
            details={"channel": channel},
        )


class ChannelNotEnabledError(UnifyChatError):
    """Requested channel has no usable adapter (400)."""

    def __init__(self, channel: str):
        super().__init__(
            message=f"Channel {channel} is not configured or enabled",
            status_code=400,
            error_code="CHANNEL_NOT_ENABLED",
            details={"channel": channel},
        )


class TransportError(UnifyChatError):
    """Vendor transport call failed (502)."""

    def __init__(self, channel: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Transport for '{channel}' failed: {message}",
            status_code=502,
            error_code="TRANSPORT_ERROR",
            details={"channel": channel, **details},
        )
        self.reason = message


class MalformedInboundError(UnifyChatError):
    """Inbound webhook payload could not be parsed (400)."""

    def __init__(self, channel: str, message: str = ""):
        super().__init__(
            message=f"Malformed {channel} payload: {message}",
            status_code=400,
            error_code="MALFORMED_INBOUND",
            details={"channel": channel},
        )


class NotCancellableError(UnifyChatError):
    """Message has left SCHEDULED and can no longer be cancelled (409)."""

    def __init__(self, message_id: str, status: str):
        super().__init__(
            message=f"Message is {status}, only scheduled messages can be cancelled",
            status_code=409,
            error_code="NOT_CANCELLABLE",
            details={"message_id": message_id, "status": status},
        )


# ═══════════════════════════════════════════════════════════════════════════
# HTTP Handlers
# ═══════════════════════════════════════════════════════════════════════════

def _error_body(
    request: Request,
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    error: Dict[str, Any] = {"code": error_code, "message": message, "status": status_code}
    if details:
        error["details"] = details
    if not _settings_for(request).is_production:
        error["path"] = request.url.path
        error["method"] = request.method
    return JSONResponse(status_code=status_code, content={"error": error})


def _settings_for(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def register_error_handlers(app: FastAPI) -> None:
    """Map the hierarchy above, request validation and stray exceptions to JSON."""

    @app.exception_handler(UnifyChatError)
    async def handle_app_error(request: Request, exc: UnifyChatError):
        # 4xx are the caller's problem; 5xx include vendor and store outages
        log = logger.warning if exc.status_code < 500 else logger.error
        log("%s %s: %s %s", request.method, request.url.path, exc.error_code, exc.details or "")
        return _error_body(request, exc.status_code, exc.error_code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [
            {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
            for err in exc.errors()
        ]
        summary = "; ".join(f"{f['field']}: {f['message']}" for f in fields) or "invalid request"
        return _error_body(request, 422, "VALIDATION_ERROR", summary, {"fields": fields})

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        details = None
        if _settings_for(request).DEBUG:
            details = {"traceback": traceback.format_exception(type(exc), exc, exc.__traceback__)}
        return _error_body(request, 500, "INTERNAL_ERROR", "Internal server error", details)

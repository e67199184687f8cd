"""
Error model of the emergency API — exception hierarchy + FastAPI handlers.

Every refusal the engine can produce is a ``HoslaAPIError`` subclass that
knows its HTTP status and a stable machine-readable code:

    Code                     Status   Raised when
    ────                     ──────   ───────────
    VALIDATION_ERROR         422      bad input (text length, coordinates, filters)
    INVALID_KIND             422      alert kind outside the known set
    UNAUTHENTICATED          401      no X-User-ID
    FORBIDDEN                403      viewer outside the originator's circle
    NOT_ORIGINATOR           403      resolve/cancel by someone else
    NOT_TRUST_CIRCLE_MEMBER  403      response from a non-emergency-contact
    SELF_RESPONSE            400      originator responding to own alert
    INVALID_TRANSITION       409      mutation of a resolved/cancelled alert
    CONCURRENT_UPDATE        409      optimistic update lost too many races
    NO_EMERGENCY_CONTACTS    400      alert stored, nobody eligible to notify
    RATE_LIMITED             429      creation gate closed (Retry-After set)
    NOT_FOUND                404      unknown alert id
    DELIVERY_FAILED          502      one contact unreachable on one channel

Response body:
    {"error": {"code": ..., "message": ..., "status": ..., "details": {...}}}

Usage:
    from hosla.app.core.errors import InvalidTransitionError

    raise InvalidTransitionError(alert.alert_id, alert.status.value, "resolve")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from hosla.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class HoslaAPIError(Exception):
    """Base of every error the emergency API reports to callers."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def headers(self) -> Optional[Dict[str, str]]:
        return None


class NotFoundError(HoslaAPIError):
    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(f"{resource} not found", resource=resource, **identifiers)


class ValidationError(HoslaAPIError):
    status_code = 422
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        super().__init__(message, field=field, **details)


class InvalidKindError(HoslaAPIError):
    status_code = 422
    error_code = "INVALID_KIND"

    def __init__(self, kind: str, allowed: list):
        super().__init__(f"Invalid alert kind '{kind}'", kind=kind, allowed=allowed)


class AuthenticationError(HoslaAPIError):
    status_code = 401
    error_code = "UNAUTHENTICATED"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ForbiddenError(HoslaAPIError):
    status_code = 403
    error_code = "FORBIDDEN"

    def __init__(self, message: str = "Access denied", **details: Any):
        super().__init__(message, **details)


class NotOriginatorError(HoslaAPIError):
    status_code = 403
    error_code = "NOT_ORIGINATOR"

    def __init__(self, alert_id: str, requester_id: str, action: str):
        super().__init__(
            f"Only the alert creator can {action} this alert",
            alert_id=alert_id, requester_id=requester_id,
        )


class NotTrustCircleMemberError(HoslaAPIError):
    status_code = 403
    error_code = "NOT_TRUST_CIRCLE_MEMBER"

    def __init__(self, alert_id: str, user_id: str):
        super().__init__(
            "Only trust circle members can respond", alert_id=alert_id, user_id=user_id,
        )


class SelfResponseError(HoslaAPIError):
    status_code = 400
    error_code = "SELF_RESPONSE"

    def __init__(self, alert_id: str):
        super().__init__("Cannot respond to your own alert", alert_id=alert_id)


class InvalidTransitionError(HoslaAPIError):
    """The alert is resolved or cancelled; nothing may change it any more."""

    status_code = 409
    error_code = "INVALID_TRANSITION"

    def __init__(self, alert_id: str, status: str, action: str):
        super().__init__(
            f"Cannot {action} alert in status '{status}'",
            alert_id=alert_id, status=status, action=action,
        )


class NoEmergencyContactsError(HoslaAPIError):
    """
    The alert was stored but nobody could be notified.

    The alert still exists and stays active; its id travels in ``details``
    so the client can point the user at it once contacts are added.
    """

    status_code = 400
    error_code = "NO_EMERGENCY_CONTACTS"

    def __init__(self, alert_id: str, originator_id: str):
        super().__init__(
            "No trust circle members found. Please add emergency contacts first.",
            alert_id=alert_id, originator_id=originator_id,
        )
        self.alert_id = alert_id


class RateLimitedError(HoslaAPIError):
    status_code = 429
    error_code = "RATE_LIMITED"

    def __init__(
        self,
        message: str = "Too many emergency alerts, please wait before sending another.",
        retry_after: int = 60,
    ):
        super().__init__(message, retry_after_seconds=retry_after)
        self.retry_after = retry_after

    def headers(self) -> Optional[Dict[str, str]]:
        return {"Retry-After": str(self.retry_after)}


class ConcurrentUpdateError(HoslaAPIError):
    status_code = 409
    error_code = "CONCURRENT_UPDATE"

    def __init__(self, alert_id: str, attempts: int):
        super().__init__(
            f"Alert {alert_id} is being modified concurrently",
            alert_id=alert_id, attempts=attempts,
        )


class DeliveryFailedError(HoslaAPIError):
    """One contact could not be reached on one channel. Never reaches HTTP callers."""

    status_code = 502
    error_code = "DELIVERY_FAILED"

    def __init__(self, contact_id: str, channel: str, message: str = ""):
        super().__init__(
            f"Delivery to {contact_id} failed on {channel}: {message}",
            contact_id=contact_id, channel=channel,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _error_response(
    request: Request,
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    error: Dict[str, Any] = {"code": error_code, "message": message, "status": status_code}
    if details:
        error["details"] = details
    if not settings.is_production:
        error["path"] = request.url.path
        error["method"] = request.method
    return JSONResponse(status_code=status_code, content={"error": error}, headers=headers)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Map engine errors, request validation and crashes onto the error body."""

    @app.exception_handler(HoslaAPIError)
    async def handle_engine_error(request: Request, exc: HoslaAPIError):
        logger.log(
            logging.ERROR if exc.status_code >= 500 else logging.WARNING,
            "%s %s refused [%s]: %s",
            request.method, request.url.path, exc.error_code, exc.message,
            extra={"alert_id": exc.details.get("alert_id"), "status_code": exc.status_code},
        )
        return _error_response(
            request, exc.status_code, exc.error_code, exc.message, exc.details, exc.headers(),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in e.get("loc", ())[1:]), "message": e.get("msg")}
            for e in exc.errors()
        ]
        return _error_response(
            request, 422, ValidationError.error_code, "Request validation failed",
            {"errors": errors},
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical("Unhandled exception on %s: %s", request.url.path, exc, exc_info=exc)
        details = {"traceback": traceback.format_exc().splitlines()} if settings.DEBUG else None
        return _error_response(
            request, 500, HoslaAPIError.error_code,
            str(exc) if settings.DEBUG else "Internal server error",
            details,
        )

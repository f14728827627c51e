"""Error taxonomy and FastAPI handlers.

Every failure the core surfaces to a caller is an AppError subclass carrying a
stable `code`, an HTTP-equivalent `status_code`, and a `context` dict with the
ids/limits/timestamps needed for a user-facing message.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from gobbledata.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.context: Dict[str, Any] = context or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    """Ownership-scoped lookup found nothing (never 403, to avoid leaking existence)."""
    code = "not_found"
    status_code = 404


class AuthorizationFailedError(AppError):
    """OAuth code exchange rejected; nothing was persisted."""
    code = "authorization_failed"
    status_code = 400


class RefreshFailedError(AppError):
    """Refresh token revoked or expired; the connection requires re-authorization."""
    code = "refresh_failed"
    status_code = 401

    def __init__(self, message: str = "Connection must be re-authorized", *, connection_id: Optional[int] = None):
        super().__init__(message, context={"connection_id": connection_id})
        self.connection_id = connection_id


class NoResourcesFoundError(AppError):
    """The authorized identity has no GA4 properties yet."""
    code = "no_resources_found"
    status_code = 404

    def __init__(self, message: str = "No GA4 properties found. Please set one up in Google Analytics."):
        super().__init__(message)


class TrialExpiredError(AppError):
    code = "trial_expired"
    status_code = 403

    def __init__(self, trial_ended_at: datetime):
        super().__init__(
            "Your free trial has ended. Please upgrade to continue.",
            context={"trial_ended_at": trial_ended_at.isoformat(), "upgrade_required": True},
        )
        self.trial_ended_at = trial_ended_at


class PropertyLimitReachedError(AppError):
    code = "property_limit_reached"
    status_code = 403

    def __init__(self, *, plan: str, plan_name: str, current: int, limit: Optional[int], upgrade_required: bool):
        limit_text = "unlimited" if limit is None else str(limit)
        noun = "property" if limit == 1 else "properties"
        super().__init__(
            f"You've reached your {plan_name} plan limit of {limit_text} {noun}.",
            context={
                "current_plan": plan,
                "limit": "Unlimited" if limit is None else limit,
                "current": current,
                "upgrade_required": upgrade_required,
            },
        )
        self.plan = plan
        self.current = current
        self.limit = limit
        self.upgrade_required = upgrade_required


class InvalidPlanError(AppError):
    """A stored plan_type has no PlanLimit entry. Operator-facing configuration fault."""
    code = "invalid_plan"
    status_code = 500

    def __init__(self, plan_type: Any):
        super().__init__("Invalid subscription plan", context={"plan_type": str(plan_type)})
        self.plan_type = plan_type


class SessionOwnershipMismatchError(AppError):
    code = "forbidden"
    status_code = 403

    def __init__(self):
        # No session or user details in the message
        super().__init__("Unauthorized access to session")


class NoSubscriptionAttachedError(AppError):
    code = "no_subscription"
    status_code = 400

    def __init__(self, message: str = "No subscription found"):
        super().__init__(message)


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503

    def __init__(self, message: str = "Stripe is not configured. Set STRIPE_SECRET_KEY environment variable."):
        super().__init__(message)


class UpstreamServiceError(AppError):
    """An identity-provider or payment-processor call failed outright."""
    code = "upstream_error"
    status_code = 502


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, context: Optional[Dict[str, Any]] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if context:
        error.update(context)
    return {"error": error, "detail": message}


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.context)
    logger = logging.getLogger("gobbledata")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("gobbledata")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("gobbledata")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response

"""
GA4 connection API routes.

- GET    /api/ga4/connect: start OAuth (gated by trial + property capacity)
- GET    /api/ga4/callback: OAuth redirect target; always redirects to the dashboard
- GET    /api/ga4/properties: active connections
- DELETE /api/ga4/disconnect/{connection_id}: soft-delete
"""
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError

from gobbledata.core.auth import get_current_user_id
from gobbledata.core.errors import (
    AppError,
    NoResourcesFoundError,
    PropertyLimitReachedError,
    TrialExpiredError,
)
from gobbledata.dependencies import Services, get_connection_manager, get_services, require_property_capacity
from gobbledata.features.connections.service import ConnectionManager
from gobbledata.models.subscription import PropertyLimit


logger = logging.getLogger("gobbledata")

router = APIRouter(prefix="/ga4", tags=["ga4"])


def _dashboard_redirect(services: Services, **params) -> RedirectResponse:
    return RedirectResponse(url=f"{services.settings.FRONTEND_URL}/dashboard?{urlencode(params)}", status_code=302)


@router.get("/connect")
def connect(
    user_id: str = Depends(get_current_user_id),
    property_limit: PropertyLimit = Depends(require_property_capacity),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Redirect the browser to Google's consent screen."""
    logger.info(
        "ga4.connect_started",
        extra={"user_id": user_id, "remaining": property_limit.as_dict()["remaining"]},
    )
    return RedirectResponse(url=manager.authorization_url(user_id), status_code=302)


@router.get("/callback")
def callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    services: Services = Depends(get_services),
):
    """
    OAuth callback. `state` carries the user id set in /connect.

    Outcomes (all redirects to FRONTEND_URL/dashboard):
        ga4_connected=true&property=<name>
        error=no_code | no_ga4_properties | trial_expired | property_limit_reached | db_error | callback_failed
    """
    if not code:
        return _dashboard_redirect(services, error="no_code")
    if not state:
        return _dashboard_redirect(services, error="callback_failed")

    # state is not authenticated: whoever holds a fresh code can bind it to any user id.
    # TODO: sign state (user id + nonce, HMAC with AUTH_JWT_SECRET) in /connect and verify it here.
    try:
        connection = services.connections.complete_authorization(state, code)
    except NoResourcesFoundError as e:
        return _dashboard_redirect(services, error="no_ga4_properties", message=e.message)
    except (TrialExpiredError, PropertyLimitReachedError) as e:
        return _dashboard_redirect(services, error=e.code)
    except AppError as e:
        logger.warning("ga4.callback_failed", extra={"user_id": state, "error_code": e.code})
        return _dashboard_redirect(services, error="callback_failed")
    except SQLAlchemyError:
        logger.error("ga4.callback_db_error", exc_info=True, extra={"user_id": state, "error_code": "db_error"})
        return _dashboard_redirect(services, error="db_error")
    except Exception:
        # The browser is mid-redirect; it must land back on the dashboard
        logger.error("ga4.callback_failed", exc_info=True, extra={"user_id": state, "error_code": "internal_error"})
        return _dashboard_redirect(services, error="callback_failed")

    return _dashboard_redirect(
        services,
        ga4_connected="true",
        property=connection.external_account_name or connection.external_account_id,
    )


@router.get("/properties")
def list_properties(
    user_id: str = Depends(get_current_user_id),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    return {"connections": [c.public_dict() for c in manager.list_connections(user_id)]}


@router.delete("/disconnect/{connection_id}")
def disconnect(
    connection_id: int,
    user_id: str = Depends(get_current_user_id),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    manager.disconnect(user_id, connection_id)
    return {"success": True, "message": "Property disconnected"}

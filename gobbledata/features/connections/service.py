"""
gobbledata/features/connections/service.py

GA4 connection lifecycle.

Handles:
- OAuth completion (exchange -> discovery -> select -> upsert)
- Listing and soft-disconnecting a user's connections
- Token refresh on behalf of the external scheduler
"""

from datetime import datetime, timedelta
from typing import List, Optional
import logging

from gobbledata.core.errors import (
    AuthorizationFailedError,
    NoResourcesFoundError,
    NotFoundError,
    RefreshFailedError,
    UpstreamServiceError,
)
from gobbledata.core.logging import log_event
from gobbledata.core.metrics import ga4_discovery_degraded_total, ga4_connections_deactivated_total
from gobbledata.features.connections.store import CredentialStore
from gobbledata.features.identity.provider import (
    AccessibleAccount,
    DiscoveryFailed,
    ExchangeFailed,
    IdentityProvider,
    IdentityProviderError,
    RefreshFailed,
)
from gobbledata.models.common import utc_now
from gobbledata.models.connection import ExternalConnection


logger = logging.getLogger("gobbledata")


class ConnectionManager:
    def __init__(self, identity: IdentityProvider, store: CredentialStore, entitlements=None):
        """
        Args:
            identity: OAuth provider client
            store: ga4_connections access
            entitlements: optional EntitlementEngine; when given, adding a property
                the user is not already connected to is checked against the plan
        """
        self.identity = identity
        self.store = store
        self.entitlements = entitlements

    def authorization_url(self, user_id: str) -> str:
        return self.identity.build_authorization_url(user_id)

    def _discover(self, user_id: str, access_token: str) -> List[AccessibleAccount]:
        try:
            return self.identity.list_accessible_accounts(access_token)
        except DiscoveryFailed as e:
            # A failed listing reads as "no properties"
            ga4_discovery_degraded_total.inc({"reason": e.provider_error or "unknown"})
            log_event(
                "warning",
                "ga4.discovery_degraded",
                user_id=user_id,
                error_code="discovery_failed",
                extra={"status": e.status_code, "provider_error": e.provider_error, "reason": str(e)},
            )
            return []

    def _ensure_capacity(self, user_id: str, account_id: str) -> None:
        if self.entitlements is None:
            return
        already_connected = any(
            c.external_account_id == account_id for c in self.store.list_active(user_id)
        )
        if already_connected:
            return
        subscription = self.entitlements.check_trial(user_id)
        self.entitlements.check_property_limit(user_id, subscription)

    def complete_authorization(self, user_id: str, code: str, *, now: Optional[datetime] = None) -> ExternalConnection:
        """
        Finish the OAuth callback for user_id.

        Raises:
            AuthorizationFailedError: code rejected (nothing persisted)
            NoResourcesFoundError: identity has no GA4 properties (nothing persisted)
            TrialExpiredError / PropertyLimitReachedError: plan does not allow another property
        """
        try:
            grant = self.identity.exchange_code(code)
        except ExchangeFailed as e:
            log_event(
                "warning",
                "ga4.exchange_failed",
                user_id=user_id,
                error_code="authorization_failed",
                extra={"status": e.status_code, "provider_error": e.provider_error},
            )
            raise AuthorizationFailedError("Failed to get tokens from authorization code") from e

        accounts = self._discover(user_id, grant.access_token)
        if not accounts:
            log_event("info", "ga4.no_properties", user_id=user_id)
            raise NoResourcesFoundError()

        # No disambiguation: the first property in provider order wins
        selected = accounts[0]
        self._ensure_capacity(user_id, selected.account_id)

        now = now or utc_now()
        connection = self.store.upsert_connection(
            user_id=user_id,
            external_account_id=selected.account_id,
            external_account_name=selected.account_name,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            token_expires_at=now + timedelta(seconds=grant.expires_in),
            now=now,
        )
        log_event(
            "info",
            "ga4.connection_upserted",
            user_id=user_id,
            extra={
                "connection_id": connection.id,
                "property_id": selected.account_id,
                "properties_found": len(accounts),
            },
        )
        return connection

    def list_connections(self, user_id: str) -> List[ExternalConnection]:
        return self.store.list_active(user_id)

    def get_connection(self, user_id: str, connection_id: int) -> ExternalConnection:
        connection = self.store.get_owned(user_id, connection_id)
        if connection is None:
            raise NotFoundError("Connection not found")
        return connection

    def disconnect(self, user_id: str, connection_id: int) -> None:
        """Soft-delete; another user's id is indistinguishable from a missing one."""
        if not self.store.deactivate(user_id, connection_id):
            raise NotFoundError("Connection not found")
        ga4_connections_deactivated_total.inc({"reason": "user_disconnect"})
        log_event("info", "ga4.disconnected", user_id=user_id, extra={"connection_id": connection_id})

    def refresh_connection(self, user_id: str, connection_id: int, *, now: Optional[datetime] = None) -> ExternalConnection:
        """
        Refresh the access token of an owned, active connection.

        A revoked or expired refresh token deactivates the connection; the user
        has to authorize again. Transient provider failures leave it untouched.
        """
        connection = self.get_connection(user_id, connection_id)
        if not connection.refresh_token:
            self._deactivate_for_reauth(connection, reason="missing_refresh_token")
            raise RefreshFailedError(connection_id=connection.id)

        try:
            grant = self.identity.refresh_token(connection.refresh_token)
        except RefreshFailed as e:
            self._deactivate_for_reauth(connection, reason=e.provider_error or "refresh_rejected")
            raise RefreshFailedError(connection_id=connection.id) from e
        except IdentityProviderError as e:
            logger.warning(
                "ga4.refresh_transient_failure",
                extra={"user_id": user_id, "connection_id": connection.id, "status": e.status_code},
            )
            raise UpstreamServiceError("Identity provider unavailable, try again later") from e

        now = now or utc_now()
        self.store.update_tokens(
            connection.id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            token_expires_at=now + timedelta(seconds=grant.expires_in),
            now=now,
        )
        log_event("info", "ga4.token_refreshed", user_id=user_id, extra={"connection_id": connection.id})
        return self.get_connection(user_id, connection.id)

    def _deactivate_for_reauth(self, connection: ExternalConnection, *, reason: str) -> None:
        self.store.deactivate(connection.user_id, connection.id)
        ga4_connections_deactivated_total.inc({"reason": "refresh_failed"})
        log_event(
            "warning",
            "ga4.reauthorization_required",
            user_id=connection.user_id,
            error_code="refresh_failed",
            extra={"connection_id": connection.id, "reason": reason},
        )

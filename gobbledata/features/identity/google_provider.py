"""
Google identity provider implementation.

Implements IdentityProvider against Google's OAuth 2.0 endpoints and the
Analytics Admin API (read-only scope). One httpx.Client is created at startup
and reused for every call.
"""
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from gobbledata.features.identity.provider import (
    AccessibleAccount,
    DiscoveryFailed,
    ExchangeFailed,
    IdentityProviderError,
    RefreshFailed,
    TokenGrant,
)

logger = logging.getLogger("gobbledata")

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
ANALYTICS_ADMIN_URL = "https://analyticsadmin.googleapis.com/v1beta/accountSummaries"
GA4_SCOPES = ["https://www.googleapis.com/auth/analytics.readonly"]

DEFAULT_EXPIRES_IN = 3600
PROPERTY_PREFIX = "properties/"


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("status") or error.get("message")
    return error


def _json_object(response: httpx.Response, error_cls, message: str) -> Dict[str, Any]:
    """Body of a 2xx reply; anything but a JSON object raises error_cls."""
    try:
        payload = response.json()
    except ValueError as e:
        raise error_cls(message, provider_error="malformed_response", status_code=response.status_code) from e
    if not isinstance(payload, dict):
        raise error_cls(message, provider_error="malformed_response", status_code=response.status_code)
    return payload


class GoogleIdentityProvider:
    """Google implementation of IdentityProvider protocol."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._http = http_client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._http.close()

    def build_authorization_url(self, user_id: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(GA4_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": user_id,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def _post_token(self, data: Dict[str, str]) -> httpx.Response:
        return self._http.post(GOOGLE_TOKEN_URL, data=data, headers={"Accept": "application/json"})

    def exchange_code(self, code: str) -> TokenGrant:
        try:
            response = self._post_token({
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
            })
        except httpx.HTTPError as e:
            raise ExchangeFailed(f"Token endpoint unreachable: {e}") from e

        if response.is_error:
            raise ExchangeFailed(
                "Failed to get tokens from authorization code",
                provider_error=_error_code(response),
                status_code=response.status_code,
            )

        payload = _json_object(response, ExchangeFailed, "Malformed token response")
        access_token = payload.get("access_token")
        if not access_token:
            raise ExchangeFailed("Token response did not include an access token")

        return TokenGrant(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=int(payload.get("expires_in") or DEFAULT_EXPIRES_IN),
        )

    def refresh_token(self, refresh_token: str) -> TokenGrant:
        try:
            response = self._post_token({
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            })
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"Token endpoint unreachable: {e}") from e

        if response.status_code >= 500:
            raise IdentityProviderError(
                "Token endpoint error during refresh",
                provider_error=_error_code(response),
                status_code=response.status_code,
            )
        if response.is_error:
            # invalid_grant et al: revoked, expired, or issued to another client
            raise RefreshFailed(
                "Failed to refresh access token",
                provider_error=_error_code(response),
                status_code=response.status_code,
            )

        # A garbled 200 is transient; the stored refresh token stays valid
        payload = _json_object(response, IdentityProviderError, "Malformed refresh response")
        access_token = payload.get("access_token")
        if not access_token:
            raise RefreshFailed("Refresh response did not include an access token")

        return TokenGrant(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=int(payload.get("expires_in") or DEFAULT_EXPIRES_IN),
        )

    def list_accessible_accounts(self, access_token: str) -> List[AccessibleAccount]:
        accounts: List[AccessibleAccount] = []
        page_token: Optional[str] = None

        while True:
            params: Dict[str, Any] = {"pageSize": 200}
            if page_token:
                params["pageToken"] = page_token
            try:
                response = self._http.get(
                    ANALYTICS_ADMIN_URL,
                    params=params,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            except httpx.HTTPError as e:
                raise DiscoveryFailed(f"Analytics Admin API unreachable: {e}") from e

            if response.is_error:
                raise DiscoveryFailed(
                    "Failed to fetch GA4 properties",
                    provider_error=_error_code(response),
                    status_code=response.status_code,
                )

            payload = _json_object(response, DiscoveryFailed, "Malformed accountSummaries response")
            for summary in payload.get("accountSummaries") or []:
                for prop in summary.get("propertySummaries") or []:
                    resource = prop.get("property") or ""
                    if not resource.startswith(PROPERTY_PREFIX):
                        continue
                    accounts.append(
                        AccessibleAccount(
                            account_id=resource[len(PROPERTY_PREFIX):],
                            account_name=prop.get("displayName") or resource,
                            parent_name=summary.get("displayName"),
                        )
                    )

            page_token = payload.get("nextPageToken")
            if not page_token:
                break

        logger.info("ga4.accounts_discovered", extra={"count": len(accounts)})
        return accounts

"""
Identity provider protocol.

Defines the interface for OAuth identity providers (Google, etc.).
ConnectionManager depends only on this protocol; it never sees HTTP.
"""
from typing import Protocol, List, Optional
from dataclasses import dataclass


@dataclass(frozen=True)
class TokenGrant:
    """Tokens returned by an authorization-code exchange or a refresh."""
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class AccessibleAccount:
    """A resource the access token can read (a GA4 property)."""
    account_id: str
    account_name: str
    parent_name: Optional[str] = None


class IdentityProvider(Protocol):
    """
    Protocol for OAuth identity providers.

    Implementations must handle:
    - Authorization URL construction (offline access, forced consent)
    - Authorization-code exchange
    - Access-token refresh
    - Enumeration of accounts the token can read
    """

    def build_authorization_url(self, user_id: str) -> str:
        """
        Build the consent URL for a user.

        The user id travels as the opaque `state` parameter. Consent is forced
        so a refresh token is issued even on re-authorization.
        """
        ...

    def exchange_code(self, code: str) -> TokenGrant:
        """
        Exchange a single-use authorization code for tokens.

        Raises:
            ExchangeFailed: code expired, reused, malformed, or provider unreachable
        """
        ...

    def refresh_token(self, refresh_token: str) -> TokenGrant:
        """
        Obtain a new access token.

        Raises:
            RefreshFailed: refresh token revoked or expired (terminal)
            IdentityProviderError: transient provider failure
        """
        ...

    def list_accessible_accounts(self, access_token: str) -> List[AccessibleAccount]:
        """
        Enumerate accounts readable with the token, in provider order.

        Returns an empty list when the identity has no accounts.

        Raises:
            DiscoveryFailed: the listing call itself failed
        """
        ...


class IdentityProviderError(Exception):
    """Base exception for identity provider errors."""

    def __init__(self, message: str, *, provider_error: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider_error = provider_error
        self.status_code = status_code


class ExchangeFailed(IdentityProviderError):
    """Authorization-code exchange was rejected."""
    pass


class RefreshFailed(IdentityProviderError):
    """Refresh token revoked or expired; the connection needs full re-authorization."""
    pass


class DiscoveryFailed(IdentityProviderError):
    """Account listing call failed."""
    pass

"""
Google identity provider against a mocked transport.
"""
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from gobbledata.core.errors import AuthorizationFailedError, NoResourcesFoundError, UpstreamServiceError
from gobbledata.features.connections.service import ConnectionManager
from gobbledata.features.connections.store import CredentialStore
from gobbledata.features.identity.google_provider import (
    ANALYTICS_ADMIN_URL,
    GOOGLE_TOKEN_URL,
    GoogleIdentityProvider,
)
from gobbledata.features.identity.provider import (
    DiscoveryFailed,
    ExchangeFailed,
    IdentityProviderError,
    RefreshFailed,
)


def make_provider(handler) -> GoogleIdentityProvider:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return GoogleIdentityProvider(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="http://api.test/api/ga4/callback",
        http_client=client,
    )


def form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def test_authorization_url_requests_offline_access_with_forced_consent():
    provider = make_provider(lambda request: httpx.Response(500))
    url = provider.build_authorization_url("user-42")

    parsed = urlparse(url)
    params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
    assert parsed.netloc == "accounts.google.com"
    assert params["state"] == "user-42"
    assert params["access_type"] == "offline"
    assert params["prompt"] == "consent"
    assert params["response_type"] == "code"
    assert params["scope"] == "https://www.googleapis.com/auth/analytics.readonly"
    assert params["redirect_uri"] == "http://api.test/api/ga4/callback"


def test_authorization_url_is_deterministic():
    provider = make_provider(lambda request: httpx.Response(500))
    assert provider.build_authorization_url("u1") == provider.build_authorization_url("u1")


def test_exchange_code_returns_tokens():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["form"] = form(request)
        return httpx.Response(
            200,
            json={"access_token": "ya29.a", "refresh_token": "1//r", "expires_in": 3599, "token_type": "Bearer"},
        )

    grant = make_provider(handler).exchange_code("4/code")

    assert seen["url"] == GOOGLE_TOKEN_URL
    assert seen["form"]["grant_type"] == "authorization_code"
    assert seen["form"]["code"] == "4/code"
    assert grant.access_token == "ya29.a"
    assert grant.refresh_token == "1//r"
    assert grant.expires_in == 3599


def test_exchange_code_defaults_expiry_when_missing():
    provider = make_provider(lambda request: httpx.Response(200, json={"access_token": "ya29.a"}))
    grant = provider.exchange_code("4/code")
    assert grant.expires_in == 3600
    assert grant.refresh_token is None


def test_exchange_code_rejected_raises_exchange_failed():
    provider = make_provider(
        lambda request: httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad Request"})
    )
    with pytest.raises(ExchangeFailed) as exc_info:
        provider.exchange_code("4/reused")
    assert exc_info.value.provider_error == "invalid_grant"
    assert exc_info.value.status_code == 400


def test_exchange_code_transport_error_raises_exchange_failed():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ExchangeFailed):
        make_provider(handler).exchange_code("4/code")


def test_refresh_revoked_token_is_terminal():
    provider = make_provider(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
    with pytest.raises(RefreshFailed):
        provider.refresh_token("1//revoked")


def test_refresh_server_error_is_not_terminal():
    provider = make_provider(lambda request: httpx.Response(503, json={"error": "backend_error"}))
    with pytest.raises(IdentityProviderError) as exc_info:
        provider.refresh_token("1//r")
    assert not isinstance(exc_info.value, RefreshFailed)


def test_refresh_sends_refresh_grant():
    seen = {}

    def handler(request):
        seen.update(form(request))
        return httpx.Response(200, json={"access_token": "ya29.new", "expires_in": 3600})

    grant = make_provider(handler).refresh_token("1//r")
    assert seen["grant_type"] == "refresh_token"
    assert seen["refresh_token"] == "1//r"
    assert grant.access_token == "ya29.new"
    assert grant.refresh_token is None


def test_list_accounts_follows_pages_and_keeps_only_properties():
    pages = {
        None: {
            "accountSummaries": [
                {
                    "account": "accounts/1",
                    "displayName": "Acme",
                    "propertySummaries": [
                        {"property": "properties/111", "displayName": "Main Site"},
                        {"property": "accounts/1/other", "displayName": "Not a property"},
                    ],
                }
            ],
            "nextPageToken": "page-2",
        },
        "page-2": {
            "accountSummaries": [
                {
                    "account": "accounts/2",
                    "displayName": "Side Project",
                    "propertySummaries": [{"property": "properties/222", "displayName": "Blog"}],
                },
                {"account": "accounts/3", "displayName": "Empty"},
            ]
        },
    }
    auth_headers = []

    def handler(request):
        assert str(request.url).startswith(ANALYTICS_ADMIN_URL)
        auth_headers.append(request.headers["Authorization"])
        return httpx.Response(200, json=pages[request.url.params.get("pageToken")])

    accounts = make_provider(handler).list_accessible_accounts("ya29.a")

    assert [a.account_id for a in accounts] == ["111", "222"]
    assert [a.account_name for a in accounts] == ["Main Site", "Blog"]
    assert [a.parent_name for a in accounts] == ["Acme", "Side Project"]
    assert auth_headers == ["Bearer ya29.a", "Bearer ya29.a"]


def test_list_accounts_with_no_accounts_is_empty_not_error():
    provider = make_provider(lambda request: httpx.Response(200, json={}))
    assert provider.list_accessible_accounts("ya29.a") == []


def test_list_accounts_error_raises_discovery_failed():
    provider = make_provider(
        lambda request: httpx.Response(403, json={"error": {"code": 403, "status": "PERMISSION_DENIED"}})
    )
    with pytest.raises(DiscoveryFailed) as exc_info:
        provider.list_accessible_accounts("ya29.a")
    assert exc_info.value.provider_error == "PERMISSION_DENIED"


def html_reply(request):
    return httpx.Response(200, text="<html>proxy error</html>", headers={"content-type": "text/html"})


def test_exchange_code_non_json_body_raises_exchange_failed():
    with pytest.raises(ExchangeFailed) as exc_info:
        make_provider(html_reply).exchange_code("4/code")
    assert exc_info.value.provider_error == "malformed_response"


def test_exchange_code_json_array_body_raises_exchange_failed():
    provider = make_provider(lambda request: httpx.Response(200, json=["access_token"]))
    with pytest.raises(ExchangeFailed):
        provider.exchange_code("4/code")


def test_refresh_non_json_body_is_not_terminal():
    with pytest.raises(IdentityProviderError) as exc_info:
        make_provider(html_reply).refresh_token("1//r")
    assert not isinstance(exc_info.value, RefreshFailed)


def test_list_accounts_non_json_body_raises_discovery_failed():
    with pytest.raises(DiscoveryFailed) as exc_info:
        make_provider(html_reply).list_accessible_accounts("ya29.a")
    assert exc_info.value.provider_error == "malformed_response"


def google_flow(database, admin_reply):
    def handler(request):
        if str(request.url) == GOOGLE_TOKEN_URL:
            return httpx.Response(200, json={"access_token": "ya29.a", "refresh_token": "1//r", "expires_in": 3600})
        return admin_reply(request)

    return ConnectionManager(make_provider(handler), CredentialStore(database))


def test_garbled_discovery_reply_reads_as_no_properties(database):
    manager = google_flow(database, html_reply)

    with pytest.raises(NoResourcesFoundError):
        manager.complete_authorization("user-a", "4/code")
    assert manager.list_connections("user-a") == []


def test_garbled_token_reply_is_authorization_failed(database):
    manager = ConnectionManager(make_provider(html_reply), CredentialStore(database))

    with pytest.raises(AuthorizationFailedError):
        manager.complete_authorization("user-a", "4/code")


def test_garbled_refresh_reply_keeps_connection(database):
    def admin_reply(request):
        return httpx.Response(
            200,
            json={"accountSummaries": [
                {"displayName": "Acme", "propertySummaries": [{"property": "properties/111", "displayName": "Main Site"}]}
            ]},
        )

    manager = google_flow(database, admin_reply)
    connection = manager.complete_authorization("user-a", "4/code")
    manager.identity = make_provider(html_reply)

    with pytest.raises(UpstreamServiceError):
        manager.refresh_connection("user-a", connection.id)
    assert manager.get_connection("user-a", connection.id).is_connected

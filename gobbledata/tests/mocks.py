"""
In-memory stand-ins for the identity provider and the payment processor.

Both implement the same protocols as the real clients, so services under
test are constructed exactly as in production.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from gobbledata.core.config import Settings
from gobbledata.features.billing.provider import BillingProviderError, BillingWebhookError
from gobbledata.features.identity.provider import AccessibleAccount, TokenGrant


VALID_SIGNATURE = "t=1,v1=valid"

TEST_JWT_SECRET = "test-jwt-secret-with-at-least-32-bytes!!"


def make_settings(**overrides) -> Settings:
    values = dict(
        ENV="test",
        DATABASE_URL="sqlite:///:memory:",
        TEST_DATABASE_URL=None,
        FRONTEND_URL="http://frontend.test",
        GOOGLE_CLIENT_ID="client-id",
        GOOGLE_CLIENT_SECRET="client-secret",
        GOOGLE_REDIRECT_URI="http://api.test/api/ga4/callback",
        AUTH_JWT_SECRET=TEST_JWT_SECRET,
        AUTH_JWT_AUDIENCE="authenticated",
        STRIPE_SECRET_KEY="sk_test_dummy",
        STRIPE_WEBHOOK_SECRET="whsec_dummy",
        STRIPE_PRICE_STARTER="price_starter",
        STRIPE_PRICE_GROWTH="price_growth",
        STRIPE_PRICE_PRO="price_pro",
        STRIPE_PRICE_BUSINESS="price_business",
        TRIAL_DAYS=30,
        CHECKOUT_TRIAL_DAYS=30,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeIdentityProvider:
    def __init__(self, accounts: Optional[List[AccessibleAccount]] = None):
        self.accounts = list(accounts or [])
        self.grant = TokenGrant(access_token="ya29.access", expires_in=3600, refresh_token="1//refresh")
        self.refresh_grant = TokenGrant(access_token="ya29.refreshed", expires_in=1800)
        self.exchange_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.discovery_error: Optional[Exception] = None
        self.exchanged_codes: List[str] = []
        self.discovery_calls = 0

    def build_authorization_url(self, user_id: str) -> str:
        return f"https://accounts.example.test/o/oauth2/auth?state={user_id}"

    def exchange_code(self, code: str) -> TokenGrant:
        self.exchanged_codes.append(code)
        if self.exchange_error:
            raise self.exchange_error
        return self.grant

    def refresh_token(self, refresh_token: str) -> TokenGrant:
        if self.refresh_error:
            raise self.refresh_error
        return self.refresh_grant

    def list_accessible_accounts(self, access_token: str) -> List[AccessibleAccount]:
        self.discovery_calls += 1
        if self.discovery_error:
            raise self.discovery_error
        return list(self.accounts)


def ts(value: datetime) -> int:
    return int(value.timestamp())


def make_subscription(
    subscription_id: str,
    price_id: str,
    *,
    status: str = "trialing",
    unit_amount: Optional[int] = 2900,
    trial_end: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
    customer: str = "cus_test",
    metadata: Optional[Dict[str, str]] = None,
    cancel_at_period_end: bool = False,
) -> Dict[str, Any]:
    return {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "customer": customer,
        "cancel_at_period_end": cancel_at_period_end,
        "trial_end": ts(trial_end) if trial_end else None,
        "current_period_end": ts(current_period_end) if current_period_end else None,
        "metadata": metadata or {},
        "items": {"data": [{"price": {"id": price_id, "unit_amount": unit_amount}}]},
    }


class FakeBillingProvider:
    def __init__(self):
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.created_customers: List[str] = []
        self.checkout_calls: List[Dict[str, Any]] = []
        self.retrieve_customer_error: Optional[Exception] = None
        self.create_customer_error: Optional[Exception] = None
        self.retrieve_subscription_error: Optional[Exception] = None
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def add_customer(self, customer_id: str, *, deleted: bool = False, email: Optional[str] = None) -> None:
        customer = {"id": customer_id, "email": email}
        if deleted:
            customer["deleted"] = True
        self.customers[customer_id] = customer

    def retrieve_customer(self, customer_id: str):
        if self.retrieve_customer_error:
            raise self.retrieve_customer_error
        if customer_id not in self.customers:
            raise BillingProviderError(f"No such customer: '{customer_id}'")
        return self.customers[customer_id]

    def create_customer(self, *, user_id: str, email: Optional[str] = None) -> str:
        if self.create_customer_error:
            raise self.create_customer_error
        customer_id = self._next("cus_new")
        self.customers[customer_id] = {"id": customer_id, "email": email, "metadata": {"supabase_user_id": user_id}}
        self.created_customers.append(customer_id)
        return customer_id

    def create_checkout_session(self, **kwargs):
        self.checkout_calls.append(kwargs)
        session_id = self._next("cs_test")
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def retrieve_checkout_session(self, session_id: str):
        if session_id not in self.sessions:
            raise BillingProviderError(f"No such checkout.session: '{session_id}'")
        return self.sessions[session_id]

    def retrieve_subscription(self, subscription_id: str):
        if self.retrieve_subscription_error:
            raise self.retrieve_subscription_error
        if subscription_id not in self.subscriptions:
            raise BillingProviderError(f"No such subscription: '{subscription_id}'")
        return self.subscriptions[subscription_id]

    def cancel_at_period_end(self, subscription_id: str):
        subscription = dict(self.retrieve_subscription(subscription_id))
        subscription["cancel_at_period_end"] = True
        self.subscriptions[subscription_id] = subscription
        return subscription

    def construct_webhook_event(self, headers, body: bytes):
        if headers.get("stripe-signature") != VALID_SIGNATURE:
            raise BillingWebhookError("Invalid signature: no signatures found matching the expected signature")
        return json.loads(body)


def webhook_body(event_id: str, event_type: str, obj: Dict[str, Any]) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()

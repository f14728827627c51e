"""
Service wiring.

Everything with process lifetime (database, HTTP client, payment client,
stores and services) is built once by `build_services` and hung on
`app.state.services`. Routes reach it through the Depends accessors below;
tests pass their own Services into `create_app`.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request

from gobbledata.core.auth import get_current_user_id
from gobbledata.core.config import Settings
from gobbledata.core.database import Database
from gobbledata.features.billing.events import BillingEventStore
from gobbledata.features.billing.plans import PriceCatalog
from gobbledata.features.billing.provider import BillingProvider
from gobbledata.features.billing.service import BillingSyncAdapter
from gobbledata.features.billing.stripe_provider import StripeProvider
from gobbledata.features.connections.service import ConnectionManager
from gobbledata.features.connections.store import CredentialStore
from gobbledata.features.entitlements.service import EntitlementEngine
from gobbledata.features.entitlements.store import SubscriptionStore
from gobbledata.features.identity.google_provider import GoogleIdentityProvider
from gobbledata.features.identity.provider import IdentityProvider
from gobbledata.features.profiles.store import ProfileStore
from gobbledata.models.subscription import PropertyLimit


@dataclass
class Services:
    settings: Settings
    database: Database
    identity: IdentityProvider
    connections: ConnectionManager
    entitlements: EntitlementEngine
    billing: BillingSyncAdapter

    def close(self) -> None:
        close = getattr(self.identity, "close", None)
        if close is not None:
            close()
        self.database.engine.dispose()


def build_services(
    settings: Settings,
    database: Optional[Database] = None,
    *,
    identity: Optional[IdentityProvider] = None,
    billing_provider: Optional[BillingProvider] = None,
) -> Services:
    """
    Construct the object graph.

    identity and billing_provider default to the Google and Stripe clients;
    Stripe is left out (billing disabled) when STRIPE_SECRET_KEY is unset.
    """
    database = database or Database.from_url(settings.TEST_DATABASE_URL or settings.DATABASE_URL)

    if identity is None:
        identity = GoogleIdentityProvider(
            client_id=settings.GOOGLE_CLIENT_ID or "",
            client_secret=settings.GOOGLE_CLIENT_SECRET or "",
            redirect_uri=settings.GOOGLE_REDIRECT_URI or "",
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
    if billing_provider is None and settings.STRIPE_SECRET_KEY:
        billing_provider = StripeProvider(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)

    credential_store = CredentialStore(database)
    subscription_store = SubscriptionStore(database)

    entitlements = EntitlementEngine(subscription_store, credential_store, trial_days=settings.TRIAL_DAYS)
    connections = ConnectionManager(identity, credential_store, entitlements=entitlements)
    billing = BillingSyncAdapter(
        billing_provider,
        ProfileStore(database),
        subscription_store,
        BillingEventStore(database),
        PriceCatalog.from_settings(settings),
        frontend_url=settings.FRONTEND_URL,
        checkout_trial_days=settings.CHECKOUT_TRIAL_DAYS,
    )

    return Services(
        settings=settings,
        database=database,
        identity=identity,
        connections=connections,
        entitlements=entitlements,
        billing=billing,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_connection_manager(services: Services = Depends(get_services)) -> ConnectionManager:
    return services.connections


def get_entitlement_engine(services: Services = Depends(get_services)) -> EntitlementEngine:
    return services.entitlements


def get_billing_adapter(services: Services = Depends(get_services)) -> BillingSyncAdapter:
    return services.billing


def require_property_capacity(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    entitlements: EntitlementEngine = Depends(get_entitlement_engine),
) -> PropertyLimit:
    """Gate: trial still valid and room for one more property."""
    subscription = entitlements.check_trial(user_id)
    request.state.subscription = subscription
    property_limit = entitlements.check_property_limit(user_id, subscription)
    request.state.property_limit = property_limit
    return property_limit

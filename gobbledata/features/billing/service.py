"""
Billing sync adapter.

Reconciles the local subscription mirror and the cached customer reference
with Stripe, which owns subscription state. Coordinates:
- Customer management (self-healing stale customer ids)
- Checkout start and post-checkout confirmation
- Subscription status and cancellation
- Webhook mirroring (idempotent by event id)

All Stripe-specific code is in stripe_provider.py.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError

from gobbledata.core.errors import (
    BillingDisabledError,
    NoSubscriptionAttachedError,
    NotFoundError,
    SessionOwnershipMismatchError,
    UpstreamServiceError,
    ValidationError,
)
from gobbledata.core.logging import log_event
from gobbledata.core.metrics import billing_mirror_write_failures_total
from gobbledata.features.billing.events import BillingEventStore
from gobbledata.features.billing.plans import PaidTier, PriceCatalog
from gobbledata.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
)
from gobbledata.features.entitlements.store import SubscriptionStore
from gobbledata.features.profiles.store import ProfileStore
from gobbledata.models.billing import (
    CheckoutStart,
    CheckoutSummary,
    RemoteSubscriptionDetails,
    SubscriptionStatusView,
)


logger = logging.getLogger("gobbledata")

DEFAULT_CHECKOUT_TRIAL_DAYS = 30
SUBSCRIPTION_EVENT_PREFIX = "customer.subscription."


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def format_display_date(value: Optional[datetime], fallback: str) -> str:
    """'January 5, 2026' style, in UTC."""
    if value is None:
        return fallback
    return f"{value.strftime('%B')} {value.day}, {value.year}"


def _first_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _price(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    return _first_item(subscription).get("price") or {}


def _current_period_end(subscription: Mapping[str, Any]) -> Optional[datetime]:
    # Newer API versions carry the period on the subscription item
    return _from_timestamp(
        subscription.get("current_period_end") or _first_item(subscription).get("current_period_end")
    )


def _object_id(value) -> Optional[str]:
    """Id of an expandable field, whether it came back expanded or as a bare id."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def remote_details(subscription: Mapping[str, Any]) -> RemoteSubscriptionDetails:
    return RemoteSubscriptionDetails(
        status=subscription.get("status"),
        current_period_end=_current_period_end(subscription),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
    )


class BillingSyncAdapter:
    def __init__(
        self,
        provider: Optional[BillingProvider],
        profiles: ProfileStore,
        subscriptions: SubscriptionStore,
        events: BillingEventStore,
        catalog: PriceCatalog,
        *,
        frontend_url: str = "http://localhost:3000",
        checkout_trial_days: int = DEFAULT_CHECKOUT_TRIAL_DAYS,
    ):
        """
        Args:
            provider: payment processor client, or None when billing is disabled
            profiles: user_profiles access (cached customer id)
            subscriptions: subscription mirror
            events: webhook idempotency ledger
            catalog: allow-listed price ids
        """
        self.provider = provider
        self.profiles = profiles
        self.subscriptions = subscriptions
        self.events = events
        self.catalog = catalog
        self.frontend_url = frontend_url.rstrip("/")
        self.checkout_trial_days = checkout_trial_days

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    def _require_provider(self) -> BillingProvider:
        if self.provider is None:
            raise BillingDisabledError()
        return self.provider

    # Customers

    def get_or_create_customer(
        self,
        user_id: str,
        email: Optional[str] = None,
        cached_customer_id: Optional[str] = None,
    ) -> str:
        """
        Return a customer id that resolves to a live remote customer.

        A cached id that fails to resolve, or resolves to a deleted customer,
        is cleared and replaced with a newly created customer.
        """
        provider = self._require_provider()
        profile = self.profiles.ensure(user_id, email)
        customer_id = cached_customer_id or profile.stripe_customer_id

        if customer_id:
            try:
                customer = provider.retrieve_customer(customer_id)
                stale_reason = "deleted" if customer.get("deleted") else None
            except BillingProviderError as e:
                stale_reason = "retrieve_failed"
                logger.warning(
                    "billing.customer_retrieve_failed",
                    extra={"user_id": user_id, "customer_id": customer_id, "reason": str(e)},
                )

            if stale_reason is None:
                return customer_id

            log_event(
                "warning",
                "billing.customer_stale",
                user_id=user_id,
                extra={"customer_id": customer_id, "reason": stale_reason},
            )
            self.profiles.set_stripe_customer_id(user_id, None)

        try:
            new_customer_id = provider.create_customer(user_id=user_id, email=email or profile.email)
        except BillingProviderError as e:
            raise UpstreamServiceError("Failed to create billing customer") from e

        self.profiles.set_stripe_customer_id(user_id, new_customer_id)
        log_event("info", "billing.customer_created", user_id=user_id, extra={"customer_id": new_customer_id})
        return new_customer_id

    # Checkout

    def start_checkout(
        self,
        user_id: str,
        email: Optional[str],
        price_id: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutStart:
        provider = self._require_provider()
        if not price_id:
            raise ValidationError("Price ID is required")
        tier = self.catalog.tier_for_price(price_id)
        if tier is None:
            raise ValidationError("Invalid price ID", context={"price_id": price_id})

        customer_id = self.get_or_create_customer(user_id, email)
        metadata = {"supabase_user_id": user_id, "subscription_tier": tier.value}
        try:
            session = provider.create_checkout_session(
                customer_id=customer_id,
                price_id=price_id,
                success_url=success_url or f"{self.frontend_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=cancel_url or f"{self.frontend_url}/payment-cancel",
                client_reference_id=user_id,
                trial_period_days=self.checkout_trial_days,
                metadata=metadata,
            )
        except BillingProviderError as e:
            raise UpstreamServiceError("Failed to create checkout session") from e

        log_event(
            "info",
            "billing.checkout_started",
            user_id=user_id,
            extra={"session_id": session.get("id"), "tier": tier.value, "trial_days": self.checkout_trial_days},
        )
        return CheckoutStart(checkout_url=session.get("url"), session_id=session.get("id"))

    def sync_from_checkout_session(self, session_id: str, expected_user_id: str) -> CheckoutSummary:
        """
        Confirm a finished checkout for its owner and mirror the subscription.

        Raises:
            SessionOwnershipMismatchError: session was started by another user (nothing written)
            NoSubscriptionAttachedError: session has no expanded subscription
        """
        provider = self._require_provider()
        if not session_id:
            raise ValidationError("Session ID is required")
        try:
            session = provider.retrieve_checkout_session(session_id)
        except BillingProviderError as e:
            raise UpstreamServiceError("Failed to verify session") from e

        if session.get("client_reference_id") != expected_user_id:
            logger.warning(
                "billing.session_ownership_mismatch",
                extra={"user_id": expected_user_id, "error_code": "forbidden"},
            )
            raise SessionOwnershipMismatchError()

        subscription = session.get("subscription")
        if not subscription or isinstance(subscription, str):
            raise NoSubscriptionAttachedError()

        price = _price(subscription)
        tier = self.catalog.tier_for_price(price.get("id"))
        plan_name = self.catalog.plan_name_for_price(price.get("id"))
        unit_amount = price.get("unit_amount")
        trial_end = _from_timestamp(subscription.get("trial_end"))
        next_billing = _current_period_end(subscription)

        customer = session.get("customer")
        customer_details = session.get("customer_details") or {}
        customer_email = customer_details.get("email")
        if not customer_email and customer is not None and not isinstance(customer, str):
            customer_email = customer.get("email")

        self._mirror_swallowing_errors(
            expected_user_id,
            subscription,
            tier,
            customer_id=_object_id(customer),
            source="checkout_session",
        )

        return CheckoutSummary(
            plan_name=plan_name,
            amount=unit_amount / 100 if unit_amount is not None else None,
            trial_end=format_display_date(trial_end, "No trial"),
            next_billing_date=format_display_date(next_billing, "N/A"),
            customer_email=customer_email,
            status=subscription.get("status"),
        )

    def _mirror(
        self,
        user_id: str,
        subscription: Mapping[str, Any],
        tier: Optional[PaidTier],
        *,
        customer_id: Optional[str] = None,
    ) -> bool:
        # Unknown price: keep the stored plan_type, still mirror status and ids
        updated = self.subscriptions.mirror_remote_state(
            user_id,
            status=subscription.get("status"),
            plan_type=tier.plan_type.value if tier else None,
            billing_subscription_id=subscription.get("id"),
            billing_customer_id=customer_id or _object_id(subscription.get("customer")),
            trial_end_date=_from_timestamp(subscription.get("trial_end")),
        )
        if not updated:
            logger.warning("billing.mirror_no_record", extra={"user_id": user_id})
        else:
            log_event(
                "info",
                "billing.subscription_mirrored",
                user_id=user_id,
                extra={"status": subscription.get("status"), "plan": tier.value if tier else None},
            )
        return updated

    def _mirror_swallowing_errors(self, user_id, subscription, tier, *, customer_id, source: str) -> None:
        try:
            self._mirror(user_id, subscription, tier, customer_id=customer_id)
        except SQLAlchemyError as e:
            # Confirmation must not depend on the mirror; the next webhook repairs it
            billing_mirror_write_failures_total.inc({"source": source})
            log_event(
                "error",
                "billing.mirror_write_failed",
                user_id=user_id,
                error_code="mirror_write_failed",
                extra={"source": source, "reason": str(e)},
            )

    # Status and cancellation

    def get_subscription_status(self, user_id: str) -> SubscriptionStatusView:
        record = self.subscriptions.get(user_id)
        if record is None:
            raise NotFoundError("Subscription not found")

        details = None
        if self.provider is not None and record.billing_subscription_id:
            try:
                details = remote_details(self.provider.retrieve_subscription(record.billing_subscription_id))
            except BillingProviderError as e:
                logger.warning(
                    "billing.remote_status_unavailable",
                    extra={"user_id": user_id, "reason": str(e)},
                )

        return SubscriptionStatusView(tier=record.plan_type, status=record.status, stripe_details=details)

    def cancel_subscription(self, user_id: str) -> RemoteSubscriptionDetails:
        """Cancel at period end. The local status changes when the webhook arrives."""
        provider = self._require_provider()
        record = self.subscriptions.get(user_id)
        if record is None or not record.billing_subscription_id:
            raise NotFoundError("No active subscription found")
        try:
            subscription = provider.cancel_at_period_end(record.billing_subscription_id)
        except BillingProviderError as e:
            raise UpstreamServiceError("Failed to cancel subscription") from e
        log_event("info", "billing.cancel_requested", user_id=user_id)
        return remote_details(subscription)

    # Webhooks

    def process_webhook(self, headers: Mapping[str, str], body: bytes) -> Dict[str, Any]:
        """
        Verify, dedupe and mirror a processor event.

        1. Verify signature
        2. Skip if the event id was already processed
        3. Mirror subscription objects
        4. Mark as processed (or record the error and re-raise)
        """
        provider = self._require_provider()
        try:
            event = provider.construct_webhook_event(headers, body)
        except BillingWebhookError as e:
            logger.warning("billing.webhook_rejected", extra={"reason": str(e)})
            raise ValidationError(str(e), code="invalid_webhook")

        event_id = event.get("id")
        event_type = event.get("type") or ""
        if not self.events.begin(event_id, event_type, body):
            logger.info("billing.webhook_duplicate", extra={"event_id": event_id, "event_type": event_type})
            return {"received": True, "duplicate": True, "event_type": event_type}

        data = (event.get("data") or {}).get("object") or {}
        try:
            if event_type.startswith(SUBSCRIPTION_EVENT_PREFIX):
                self._apply_subscription_object(data)
            elif event_type == "checkout.session.completed":
                self._apply_completed_session(provider, data)
            self.events.mark_processed(event_id)
        except Exception as e:
            self.events.mark_failed(event_id, str(e))
            raise

        logger.info("billing.webhook_processed", extra={"event_id": event_id, "event_type": event_type})
        return {"received": True, "duplicate": False, "event_type": event_type}

    def _apply_subscription_object(self, subscription: Mapping[str, Any], user_id: Optional[str] = None) -> None:
        metadata = subscription.get("metadata") or {}
        user_id = user_id or metadata.get("supabase_user_id")
        if not user_id and subscription.get("id"):
            user_id = self.subscriptions.find_user_by_billing_subscription(subscription.get("id"))
        if not user_id:
            logger.warning("billing.webhook_unmatched", extra={"subscription_id": subscription.get("id")})
            return
        tier = self.catalog.tier_for_price(_price(subscription).get("id"))
        self._mirror(user_id, subscription, tier)

    def _apply_completed_session(self, provider: BillingProvider, session: Mapping[str, Any]) -> None:
        subscription_id = _object_id(session.get("subscription"))
        user_id = session.get("client_reference_id")
        if not subscription_id or not user_id:
            return
        try:
            subscription = provider.retrieve_subscription(subscription_id)
        except BillingProviderError as e:
            raise UpstreamServiceError("Failed to retrieve subscription for completed checkout") from e
        self._apply_subscription_object(subscription, user_id=user_id)

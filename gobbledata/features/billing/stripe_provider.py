"""
Stripe billing provider implementation.

Implements BillingProvider using the Stripe API. The secret key is passed on
each call instead of being set on the `stripe` module, so one process can hold
several providers (tests, key rotation) without shared state.
"""
from typing import Dict, Any, Mapping, Optional

import stripe

from gobbledata.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: str, webhook_secret: Optional[str] = None):
        """
        Args:
            secret_key: Stripe secret key
            webhook_secret: Stripe webhook signing secret (webhooks rejected if unset)
        """
        if not secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def retrieve_customer(self, customer_id: str) -> Mapping[str, Any]:
        try:
            return stripe.Customer.retrieve(customer_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer retrieval failed: {e}") from e

    def create_customer(self, *, user_id: str, email: Optional[str] = None) -> str:
        customer_data: Dict[str, Any] = {"metadata": {"supabase_user_id": user_id}}
        if email:
            customer_data["email"] = email
        try:
            customer = stripe.Customer.create(api_key=self.secret_key, **customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}") from e

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        client_reference_id: str,
        trial_period_days: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Mapping[str, Any]:
        subscription_data: Dict[str, Any] = {"metadata": metadata or {}}
        if trial_period_days:
            subscription_data["trial_period_days"] = trial_period_days
        try:
            return stripe.checkout.Session.create(
                api_key=self.secret_key,
                customer=customer_id,
                mode="subscription",
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=client_reference_id,
                subscription_data=subscription_data,
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}") from e

    def retrieve_checkout_session(self, session_id: str) -> Mapping[str, Any]:
        try:
            return stripe.checkout.Session.retrieve(
                session_id,
                api_key=self.secret_key,
                expand=["subscription", "customer"],
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session retrieval failed: {e}") from e

    def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        try:
            return stripe.Subscription.retrieve(subscription_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e}") from e

    def cancel_at_period_end(self, subscription_id: str) -> Mapping[str, Any]:
        try:
            return stripe.Subscription.modify(
                subscription_id,
                api_key=self.secret_key,
                cancel_at_period_end=True,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e}") from e

    def construct_webhook_event(self, headers: Mapping[str, str], body: bytes) -> Mapping[str, Any]:
        """Verify Stripe webhook signature and parse the event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            return stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}") from e

"""
Billing provider protocol.

Defines the interface for payment processors (Stripe, etc.).
BillingSyncAdapter depends only on this protocol. Objects come back as
mappings (Stripe objects are dict subclasses) and are read with `.get`.
"""
from typing import Protocol, Dict, Any, Mapping, Optional


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer retrieval and creation
    - Subscription-mode checkout sessions (create, retrieve expanded)
    - Subscription retrieval and cancel-at-period-end
    - Webhook signature verification
    """

    def retrieve_customer(self, customer_id: str) -> Mapping[str, Any]:
        """
        Fetch a customer. A deleted customer is returned with `deleted` set.

        Raises:
            BillingProviderError: unknown id or processor unreachable
        """
        ...

    def create_customer(self, *, user_id: str, email: Optional[str] = None) -> str:
        """
        Create a customer tagged with the user id.

        Returns:
            Provider customer ID
        """
        ...

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
        """
        Create a subscription checkout session.

        Returns:
            The session (at least `id` and `url`)
        """
        ...

    def retrieve_checkout_session(self, session_id: str) -> Mapping[str, Any]:
        """Fetch a session with `subscription` and `customer` expanded."""
        ...

    def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        ...

    def cancel_at_period_end(self, subscription_id: str) -> Mapping[str, Any]:
        ...

    def construct_webhook_event(self, headers: Mapping[str, str], body: bytes) -> Mapping[str, Any]:
        """
        Verify the signature and parse the event.

        Raises:
            BillingWebhookError: missing/invalid signature or malformed payload
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook verification errors."""
    pass

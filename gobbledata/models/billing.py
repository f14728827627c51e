"""
Billing value objects returned to request handlers.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, Dict, Any


@dataclass(frozen=True)
class CheckoutSummary:
    """What the payment confirmation page shows after checkout."""
    plan_name: str
    amount: Optional[float]
    trial_end: str
    next_billing_date: str
    customer_email: Optional[str] = None
    status: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CheckoutStart:
    checkout_url: str
    session_id: str


@dataclass(frozen=True)
class RemoteSubscriptionDetails:
    status: str
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool


@dataclass(frozen=True)
class SubscriptionStatusView:
    tier: Optional[str]
    status: Optional[str]
    stripe_details: Optional[RemoteSubscriptionDetails]

    def as_dict(self) -> Dict[str, Any]:
        details = None
        if self.stripe_details is not None:
            details = {
                "status": self.stripe_details.status,
                "current_period_end": (
                    self.stripe_details.current_period_end.isoformat()
                    if self.stripe_details.current_period_end else None
                ),
                "cancel_at_period_end": self.stripe_details.cancel_at_period_end,
            }
        return {"tier": self.tier, "status": self.status, "stripe_details": details}

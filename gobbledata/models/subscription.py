"""
gobbledata/models/subscription.py

Subscription mirror and plan limits.

PlanType is a closed set. PLAN_LIMITS must cover every member; the module
refuses to import otherwise, so adding a tier without a limit fails at startup
rather than on some user's request.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from gobbledata.core.errors import InvalidPlanError
from gobbledata.models.common import as_utc


class PlanType(str, Enum):
    FREE = "free"
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"
    BUSINESS = "business"


TOP_TIER = PlanType.BUSINESS


@dataclass(frozen=True)
class PlanLimit:
    max_properties: Optional[int]  # None = unbounded
    display_name: str

    @property
    def unbounded(self) -> bool:
        return self.max_properties is None


PLAN_LIMITS: Dict[PlanType, PlanLimit] = {
    PlanType.FREE: PlanLimit(max_properties=1, display_name="Free"),
    PlanType.STARTER: PlanLimit(max_properties=1, display_name="Starter"),
    PlanType.GROWTH: PlanLimit(max_properties=2, display_name="Growth"),
    PlanType.PRO: PlanLimit(max_properties=4, display_name="Pro"),
    PlanType.BUSINESS: PlanLimit(max_properties=None, display_name="Business"),
}

_unmapped = set(PlanType) - set(PLAN_LIMITS)
if _unmapped:
    raise RuntimeError(f"PLAN_LIMITS missing entries for: {sorted(p.value for p in _unmapped)}")


def parse_plan_type(value) -> PlanType:
    """Coerce a stored plan_type string into PlanType or raise InvalidPlanError."""
    if isinstance(value, PlanType):
        return value
    try:
        return PlanType(value)
    except ValueError:
        raise InvalidPlanError(value) from None


def plan_limit_for(value) -> PlanLimit:
    return PLAN_LIMITS[parse_plan_type(value)]


class SubscriptionStatus(str, Enum):
    """Known processor statuses. The column stores whatever the processor reports."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


class SubscriptionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_type: str
    status: str
    billing_customer_id: Optional[str] = None
    billing_subscription_id: Optional[str] = None
    trial_ends_at: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("trial_ends_at", "trial_end_date", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    def trial_expired(self, now: datetime) -> bool:
        """Only the free tier expires locally; paid tiers follow the processor."""
        if self.plan_type != PlanType.FREE.value or self.trial_ends_at is None:
            return False
        return now > self.trial_ends_at


@dataclass(frozen=True)
class PropertyLimit:
    """Remaining capacity; attached to the request, never persisted."""
    plan: str
    plan_name: str
    limit: Optional[int]
    current: int
    remaining: Optional[int]

    def as_dict(self) -> dict:
        return {
            "plan": self.plan,
            "plan_name": self.plan_name,
            "limit": "Unlimited" if self.limit is None else self.limit,
            "current": self.current,
            "remaining": "Unlimited" if self.remaining is None else self.remaining,
        }

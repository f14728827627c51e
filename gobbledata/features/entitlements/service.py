"""
gobbledata/features/entitlements/service.py

Entitlement engine.

Handles:
- Lazy creation of the free-tier trial record (the only origin of a SubscriptionRecord)
- Trial expiry gating
- GA4 property quota per plan
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging

from gobbledata.core.errors import InvalidPlanError, PropertyLimitReachedError, TrialExpiredError
from gobbledata.core.logging import log_event
from gobbledata.features.connections.store import CredentialStore
from gobbledata.features.entitlements.store import SubscriptionStore
from gobbledata.models.common import as_utc, utc_now
from gobbledata.models.subscription import (
    PlanType,
    PropertyLimit,
    SubscriptionRecord,
    SubscriptionStatus,
    TOP_TIER,
    parse_plan_type,
    PLAN_LIMITS,
)


logger = logging.getLogger("gobbledata")

DEFAULT_TRIAL_DAYS = 30


def _normalize_now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else utc_now()


class EntitlementEngine:
    def __init__(
        self,
        subscriptions: SubscriptionStore,
        connections: CredentialStore,
        trial_days: int = DEFAULT_TRIAL_DAYS,
    ):
        self.subscriptions = subscriptions
        self.connections = connections
        self.trial_days = trial_days

    def get_or_create_subscription(self, user_id: str, now: Optional[datetime] = None) -> SubscriptionRecord:
        record = self.subscriptions.get(user_id)
        if record is not None:
            return record

        now = _normalize_now(now)
        record, created = self.subscriptions.create_if_absent(
            user_id,
            plan_type=PlanType.FREE.value,
            status=SubscriptionStatus.TRIALING.value,
            trial_ends_at=now + timedelta(days=self.trial_days),
            now=now,
        )
        if created:
            log_event(
                "info",
                "entitlements.trial_created",
                user_id=user_id,
                extra={"trial_ends_at": record.trial_ends_at.isoformat() if record.trial_ends_at else None},
            )
        return record

    def check_trial(self, user_id: str, now: Optional[datetime] = None) -> SubscriptionRecord:
        """
        Return the user's subscription record, creating the free trial on first use.

        Raises:
            TrialExpiredError: free plan and now is past trial_ends_at
        """
        now = _normalize_now(now)
        record = self.get_or_create_subscription(user_id, now)
        if record.trial_expired(now):
            logger.info(
                "entitlements.trial_expired",
                extra={"user_id": user_id, "trial_ends_at": record.trial_ends_at.isoformat()},
            )
            raise TrialExpiredError(record.trial_ends_at)
        return record

    def _plan(self, subscription: SubscriptionRecord) -> PlanType:
        try:
            return parse_plan_type(subscription.plan_type)
        except InvalidPlanError:
            # Configuration fault, not a user error
            logger.error(
                "entitlements.invalid_plan",
                extra={"user_id": subscription.user_id, "plan_type": subscription.plan_type},
            )
            raise

    def check_property_limit(self, user_id: str, subscription: SubscriptionRecord) -> PropertyLimit:
        """
        Remaining GA4 property capacity for the user's plan.

        Raises:
            InvalidPlanError: plan_type is not a known plan
            PropertyLimitReachedError: active connections already at the plan limit
        """
        plan = self._plan(subscription)
        limit = PLAN_LIMITS[plan]
        current = self.connections.count_active(user_id)

        if limit.unbounded:
            return PropertyLimit(
                plan=plan.value,
                plan_name=limit.display_name,
                limit=None,
                current=current,
                remaining=None,
            )

        if current >= limit.max_properties:
            log_event(
                "info",
                "entitlements.property_limit_reached",
                user_id=user_id,
                error_code="property_limit_reached",
                extra={"plan": plan.value, "current": current, "limit": limit.max_properties},
            )
            raise PropertyLimitReachedError(
                plan=plan.value,
                plan_name=limit.display_name,
                current=current,
                limit=limit.max_properties,
                upgrade_required=plan is not TOP_TIER,
            )

        return PropertyLimit(
            plan=plan.value,
            plan_name=limit.display_name,
            limit=limit.max_properties,
            current=current,
            remaining=limit.max_properties - current,
        )

    def get_entitlements(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Non-raising summary of what the user's plan allows right now."""
        now = _normalize_now(now)
        record = self.get_or_create_subscription(user_id, now)
        plan = self._plan(record)
        limit = PLAN_LIMITS[plan]
        current = self.connections.count_active(user_id)
        trial_expired = record.trial_expired(now)

        if limit.unbounded:
            remaining = None
        else:
            remaining = max(limit.max_properties - current, 0)

        return {
            "plan": plan.value,
            "plan_name": limit.display_name,
            "status": record.status,
            "trial_ends_at": record.trial_ends_at.isoformat() if record.trial_ends_at else None,
            "trial_expired": trial_expired,
            "limit": "Unlimited" if limit.unbounded else limit.max_properties,
            "current": current,
            "remaining": "Unlimited" if remaining is None else remaining,
            "can_add_property": not trial_expired and (remaining is None or remaining > 0),
            "upgrade_available": plan is not TOP_TIER,
        }

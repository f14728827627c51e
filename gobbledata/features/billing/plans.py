"""
Paid tiers and the price allow-list.

Price ids are environment-specific and come from settings; the tier set is
closed. Every PaidTier must name a PlanType, checked at import.
"""

from enum import Enum
from typing import Dict, Mapping, Optional

from gobbledata.models.subscription import PlanType


UNKNOWN_PLAN_NAME = "Unknown Plan"


class PaidTier(str, Enum):
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"
    BUSINESS = "business"

    @property
    def plan_type(self) -> PlanType:
        return PlanType(self.value)

    @property
    def plan_name(self) -> str:
        return f"{self.value.capitalize()} Plan"


_unmapped = [tier.value for tier in PaidTier if tier.value not in {plan.value for plan in PlanType}]
if _unmapped:
    raise RuntimeError(f"Paid tiers without a PlanType: {_unmapped}")


class PriceCatalog:
    """Price id -> PaidTier lookup over the configured prices."""

    def __init__(self, price_ids: Mapping[str, str]):
        """
        Args:
            price_ids: tier name -> processor price id (unset tiers omitted)
        """
        self._price_to_tier: Dict[str, PaidTier] = {}
        for tier_name, price_id in price_ids.items():
            self._price_to_tier[price_id] = PaidTier(tier_name)

    @classmethod
    def from_settings(cls, settings_obj) -> "PriceCatalog":
        return cls(settings_obj.price_ids())

    def tier_for_price(self, price_id: Optional[str]) -> Optional[PaidTier]:
        if not price_id:
            return None
        return self._price_to_tier.get(price_id)

    def plan_name_for_price(self, price_id: Optional[str]) -> str:
        tier = self.tier_for_price(price_id)
        return tier.plan_name if tier else UNKNOWN_PLAN_NAME

"""Static catalog of RevenueCat subscription products."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping, Optional


@dataclass(frozen=True)
class Plan:
    product_id: str
    credits_granted: int
    duration_days: int


DEFAULT_PLANS = (
    Plan(product_id="toonify_pro_weekly", credits_granted=50, duration_days=7),
    Plan(product_id="toonify_pro_monthly", credits_granted=200, duration_days=30),
    Plan(product_id="toonify_pro_yearly", credits_granted=1000, duration_days=365),
)


class PlanCatalog:
    """Immutable product_id -> Plan lookup table.

    A product missing from the catalog grants no credits and no term; callers
    treat ``None`` as "nothing to apply", not as an error.
    """

    def __init__(self, plans: Mapping[str, Plan]):
        self._plans = MappingProxyType(dict(plans))

    @classmethod
    def from_plans(cls, plans: Iterable[Plan]) -> "PlanCatalog":
        return cls({plan.product_id: plan for plan in plans})

    @classmethod
    def default(cls) -> "PlanCatalog":
        return cls.from_plans(DEFAULT_PLANS)

    def lookup(self, product_id: Optional[str]) -> Optional[Plan]:
        if not product_id:
            return None
        return self._plans.get(product_id)

"""Billing configuration injected into the reconciler and spend gate."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from config import settings
from services.plan_catalog import PlanCatalog


@dataclass(frozen=True)
class BillingConfig:
    catalog: PlanCatalog
    webhook_secret: str
    generation_cost: int = 1


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    """Build the process-wide billing config from settings (FastAPI dependency)."""
    return BillingConfig(
        catalog=PlanCatalog.default(),
        webhook_secret=(settings.REVENUECAT_WEBHOOK_SECRET or "").strip(),
        generation_cost=max(int(settings.CREDIT_COST_GENERATION), 1),
    )

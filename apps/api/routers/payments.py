"""RevenueCat webhook receiver and payment history."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.billing_config import BillingConfig, get_billing_config
from services.ledger import list_payments
from services.reconciler import WebhookReconciler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhook")
@router.post("/revenuecat")
async def revenuecat_webhook(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    config: BillingConfig = Depends(get_billing_config),
    db: AsyncSession = Depends(get_db),
):
    """Receive one RevenueCat event.

    Returns 200 for every outcome RevenueCat should not redeliver. Auth and
    body errors are 4xx and database failures are 500.
    """
    raw_body = await request.body()
    result = await WebhookReconciler(config).process(db, raw_body, authorization)
    return {
        "received": True,
        "outcome": result.outcome.value,
        "event_id": result.event_id,
    }


@router.get("/history")
async def payment_history(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_payments(db, auth.user_id)

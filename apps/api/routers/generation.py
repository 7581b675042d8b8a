"""Image stylization endpoints gated by the credit-spend gate."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.billing_config import BillingConfig, get_billing_config
from services.errors import StylizeError
from services.generations import finish_generation, list_generations, start_generation
from services.spend_gate import CreditSpendGate
from services.stylize import Stylizer, get_stylizer

router = APIRouter()
logger = logging.getLogger(__name__)


class GenerationRequest(BaseModel):
    image_url: str = Field(min_length=1, max_length=4096)


@router.post("/create")
async def create_generation(
    request: GenerationRequest,
    _rate_limit: None = Depends(rate_limit("generation_create", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    config: BillingConfig = Depends(get_billing_config),
    stylizer: Stylizer = Depends(get_stylizer),
    db: AsyncSession = Depends(get_db),
):
    # Spend and the pending record are committed before the provider call; no ledger lock is held while it runs.
    spend, generation_id = await start_generation(
        db,
        CreditSpendGate(config),
        auth.user_id,
        request.image_url,
        config.generation_cost,
    )
    try:
        image_url = await stylizer.stylize(request.image_url)
    except StylizeError:
        await finish_generation(db, generation_id, status="failed")
        raise

    await finish_generation(db, generation_id, status="completed", generated_image_url=image_url)
    logger.info("generation_completed user=%s id=%s charged=%s", auth.user_id, generation_id, spend.charged)
    return {
        "generation_id": generation_id,
        "image_url": image_url,
        "credits_used": spend.charged,
        "remaining_balance": spend.remaining_balance,
    }


@router.get("/history")
async def generation_history(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Caller's generations, newest first."""
    return {"generations": await list_generations(db, auth.user_id)}

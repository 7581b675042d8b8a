"""Credit balance, history, purchase and admin grant endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, require_admin
from routers.rate_limit import rate_limit
from services.ledger import (
    admin_add_credits,
    get_account_snapshot,
    list_credit_transactions,
    record_client_purchase,
)

router = APIRouter()


class CreditPurchaseRequest(BaseModel):
    amount: int = Field(gt=0, le=100000)
    transaction_id: Optional[str] = None
    product_id: Optional[str] = None


class AdminCreditRequest(BaseModel):
    user_id: str = Field(min_length=1)
    amount: int = Field(gt=0, le=100000)


@router.get("/balance")
async def credits_balance(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await get_account_snapshot(db, auth.user_id)
    return {"credits_balance": snapshot.credits_balance}


@router.get("/history")
async def credits_history(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_credit_transactions(db, auth.user_id)


@router.post("/purchase")
async def purchase_credits(
    request: CreditPurchaseRequest,
    _rate_limit: None = Depends(rate_limit("credits_purchase", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await record_client_purchase(
        db,
        auth.user_id,
        amount=request.amount,
        transaction_id=request.transaction_id,
        product_id=request.product_id,
    )


@router.post("/add")
async def add_credits(
    request: AdminCreditRequest,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await admin_add_credits(db, request.user_id, amount=request.amount)

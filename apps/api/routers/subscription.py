"""Subscription status endpoints for the mobile client."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.ledger import get_account_snapshot

router = APIRouter()


@router.get("/pro")
async def pro_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Current balance and subscription fields for the caller."""
    snapshot = await get_account_snapshot(db, auth.user_id)
    payload = snapshot.to_dict()
    payload.pop("user_id")
    return payload


@router.get("/balance")
async def subscription_balance(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await get_account_snapshot(db, auth.user_id)
    return {"credits_balance": snapshot.credits_balance}

"""
Authentication router: account bootstrap for sessions issued by the auth provider.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.ledger import ensure_account

router = APIRouter()


@router.get("/me")
async def get_current_account(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Return the caller's account, creating it on first authentication."""
    snapshot = await ensure_account(db, auth.user_id, email=auth.email, name=auth.name)
    payload = snapshot.to_dict()
    payload["email"] = auth.email
    payload["name"] = auth.name
    return payload

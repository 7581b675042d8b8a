"""Account ledger: balance/subscription mutations and the credit transaction log."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.credit_transaction import TRANSACTION_TYPES, CreditTransaction
from models.payment import Payment
from services.errors import (
    AccountConflictError,
    AccountNotFoundError,
    InsufficientCreditError,
    PersistenceError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    normalized = _as_utc(value)
    return normalized.isoformat() if normalized else None


@dataclass(frozen=True)
class SubscriptionFields:
    """Subscription columns to assign; ``None`` leaves a column untouched."""

    is_pro_member: Optional[bool] = None
    pro_membership_expires_at: Optional[datetime] = None
    clear_pro_membership_expiry: bool = False
    subscription_in_grace_period: Optional[bool] = None

    def values(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        if self.is_pro_member is not None:
            values["is_pro_member"] = self.is_pro_member
        if self.clear_pro_membership_expiry:
            values["pro_membership_expires_at"] = None
        elif self.pro_membership_expires_at is not None:
            values["pro_membership_expires_at"] = self.pro_membership_expires_at
        if self.subscription_in_grace_period is not None:
            values["subscription_in_grace_period"] = self.subscription_in_grace_period
        return values


@dataclass(frozen=True)
class AccountSnapshot:
    user_id: str
    credits_balance: int
    is_pro_member: bool
    pro_membership_expires_at: Optional[datetime]
    subscription_in_grace_period: bool
    entry_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "credits_balance": self.credits_balance,
            "is_pro_member": self.is_pro_member,
            "pro_membership_expires_at": isoformat_utc(self.pro_membership_expires_at),
            "subscription_in_grace_period": self.subscription_in_grace_period,
        }


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "amount": entry.amount,
        "type": entry.type,
        "payment_id": entry.payment_id,
        "transaction_id": entry.transaction_id,
        "product_id": entry.product_id,
        "created_at": isoformat_utc(entry.created_at),
    }


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "user_id": payment.user_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "product_id": payment.product_id,
        "type": payment.product_id or "payment",
        "created_at": isoformat_utc(payment.created_at),
    }


async def commit_or_raise(db: AsyncSession) -> None:
    """Commit the session, rolling back and raising PersistenceError on failure."""
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Ledger commit failed: %s", exc)
        raise PersistenceError("Database error while saving ledger changes.") from exc


async def get_account_snapshot(db: AsyncSession, user_id: str) -> AccountSnapshot:
    result = await db.execute(
        select(
            Account.credits_balance,
            Account.is_pro_member,
            Account.pro_membership_expires_at,
            Account.subscription_in_grace_period,
        ).where(Account.id == user_id)
    )
    row = result.first()
    if row is None:
        raise AccountNotFoundError(user_id)
    return AccountSnapshot(
        user_id=user_id,
        credits_balance=int(row.credits_balance),
        is_pro_member=bool(row.is_pro_member),
        pro_membership_expires_at=_as_utc(row.pro_membership_expires_at),
        subscription_in_grace_period=bool(row.subscription_in_grace_period),
    )


async def apply_delta(
    db: AsyncSession,
    user_id: str,
    *,
    credits_delta: int = 0,
    subscription: Optional[SubscriptionFields] = None,
    transaction_type: Optional[str] = None,
    payment: Optional[Payment] = None,
    transaction_id: Optional[str] = None,
    product_id: Optional[str] = None,
) -> AccountSnapshot:
    """Apply a relative balance change and/or subscription assignment.

    The account UPDATE, the optional payment insert and the optional credit
    transaction row are flushed in the caller's transaction. Nothing is
    committed here. Negative deltas only apply while the balance covers them.
    """
    delta = int(credits_delta)
    if transaction_type is not None and transaction_type not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown credit transaction type: {transaction_type}")

    values = subscription.values() if subscription else {}
    if delta:
        values["credits_balance"] = Account.credits_balance + delta
    values["updated_at"] = datetime.now(timezone.utc)

    stmt = update(Account).where(Account.id == user_id)
    if delta < 0:
        stmt = stmt.where(Account.credits_balance >= -delta)
    result = await db.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        balance = await db.execute(select(Account.credits_balance).where(Account.id == user_id))
        available = balance.scalar_one_or_none()
        if available is None:
            raise AccountNotFoundError(user_id)
        raise InsufficientCreditError(required=-delta, available=int(available))

    if payment is not None:
        db.add(payment)
        await db.flush()

    entry_id = None
    if transaction_type is not None:
        entry = CreditTransaction(
            user_id=user_id,
            amount=delta,
            type=transaction_type,
            payment_id=payment.id if payment is not None else None,
            transaction_id=transaction_id,
            product_id=product_id or (payment.product_id if payment is not None else None),
        )
        db.add(entry)
        await db.flush()
        entry_id = entry.id

    snapshot = await get_account_snapshot(db, user_id)
    return AccountSnapshot(
        user_id=snapshot.user_id,
        credits_balance=snapshot.credits_balance,
        is_pro_member=snapshot.is_pro_member,
        pro_membership_expires_at=snapshot.pro_membership_expires_at,
        subscription_in_grace_period=snapshot.subscription_in_grace_period,
        entry_id=entry_id,
    )


async def ensure_account(
    db: AsyncSession,
    user_id: str,
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
    signup_credits: Optional[int] = None,
) -> AccountSnapshot:
    """Create the account on first authentication; return its snapshot."""
    existing = await db.execute(select(Account.id).where(Account.id == user_id))
    if existing.scalar_one_or_none() is not None:
        return await get_account_snapshot(db, user_id)

    grant = max(int(settings.SIGNUP_CREDITS if signup_credits is None else signup_credits), 0)
    db.add(Account(id=user_id, email=email, name=name, credits_balance=grant))
    if grant:
        db.add(CreditTransaction(user_id=user_id, amount=grant, type="admin_add"))
    try:
        await db.commit()
        logger.info("account_created user=%s signup_credits=%s", user_id, grant)
    except IntegrityError as exc:
        await db.rollback()
        existing = await db.execute(select(Account.id).where(Account.id == user_id))
        if existing.scalar_one_or_none() is None:
            logger.warning("account_create_conflict user=%s email=%s", user_id, email)
            raise AccountConflictError("Email is already linked to another account.") from exc
        # Concurrent first login; the other insert wins.
        logger.info("account_create_race user=%s", user_id)
    return await get_account_snapshot(db, user_id)


async def list_credit_transactions(db: AsyncSession, user_id: str) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.asc())
    )
    return [serialize_transaction(entry) for entry in result.scalars().all()]


async def list_payments(db: AsyncSession, user_id: str) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(Payment).where(Payment.user_id == user_id).order_by(Payment.created_at.desc())
    )
    return [serialize_payment(payment) for payment in result.scalars().all()]


async def _find_transaction(db: AsyncSession, transaction_id: str) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(CreditTransaction.transaction_id == transaction_id)
    )
    return result.scalar_one_or_none()


async def _get_transaction(db: AsyncSession, entry_id: str) -> CreditTransaction:
    result = await db.execute(select(CreditTransaction).where(CreditTransaction.id == entry_id))
    return result.scalar_one()


async def record_client_purchase(
    db: AsyncSession,
    user_id: str,
    *,
    amount: int,
    transaction_id: Optional[str] = None,
    product_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Credit a client-reported store purchase, once per transaction_id."""
    grant = int(amount)
    if grant <= 0:
        raise ValidationError("Invalid amount")

    if transaction_id:
        existing = await _find_transaction(db, transaction_id)
        if existing is not None:
            if existing.user_id != user_id:
                raise ValidationError("transaction_id belongs to another account.")
            logger.info("credit_purchase_replay user=%s transaction=%s", user_id, transaction_id)
            return serialize_transaction(existing)

    try:
        snapshot = await apply_delta(
            db,
            user_id,
            credits_delta=grant,
            transaction_type="purchase",
            transaction_id=transaction_id,
            product_id=product_id,
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if transaction_id:
            existing = await _find_transaction(db, transaction_id)
            if existing is not None and existing.user_id == user_id:
                return serialize_transaction(existing)
        raise PersistenceError("Conflicting purchase record.")
    except AccountNotFoundError:
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError("Database error while recording purchase.") from exc

    logger.info(
        "credit_purchase user=%s amount=%s transaction=%s balance=%s",
        user_id,
        grant,
        transaction_id,
        snapshot.credits_balance,
    )
    return serialize_transaction(await _get_transaction(db, snapshot.entry_id))


async def admin_add_credits(db: AsyncSession, user_id: str, *, amount: int) -> Dict[str, Any]:
    grant = int(amount)
    if grant <= 0:
        raise ValidationError("Invalid request")
    try:
        snapshot = await apply_delta(db, user_id, credits_delta=grant, transaction_type="admin_add")
    except AccountNotFoundError:
        await db.rollback()
        raise
    await commit_or_raise(db)
    logger.info("admin_add_credits user=%s amount=%s balance=%s", user_id, grant, snapshot.credits_balance)
    return serialize_transaction(await _get_transaction(db, snapshot.entry_id))

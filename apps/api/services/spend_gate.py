"""Credit-spend gate for paid stylization requests."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from services.billing_config import BillingConfig
from services.errors import (
    AccountNotFoundError,
    InsufficientCreditError,
    PersistenceError,
    ValidationError,
)
from services.ledger import apply_delta

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpendResult:
    granted: bool
    charged: int
    remaining_balance: int
    entry_id: Optional[str] = None


class CreditSpendGate:
    """Atomic check-and-decrement of an account's credit balance.

    The balance check lives in the UPDATE's WHERE clause, so concurrent
    spends on one account can never overdraw it.
    """

    def __init__(self, config: BillingConfig):
        self._config = config

    async def try_spend(
        self,
        db: AsyncSession,
        user_id: str,
        cost: Optional[int] = None,
        *,
        attach: Sequence[Any] = (),
    ) -> SpendResult:
        """Debit ``cost`` credits and commit, together with any ``attach`` rows."""
        debit = self._config.generation_cost if cost is None else int(cost)
        if debit <= 0:
            raise ValidationError("cost must be greater than 0")

        try:
            snapshot = await apply_delta(db, user_id, credits_delta=-debit, transaction_type="usage")
            db.add_all(list(attach))
            await db.commit()
        except (InsufficientCreditError, AccountNotFoundError) as exc:
            await db.rollback()
            logger.info("credit_spend_rejected user=%s cost=%s reason=%s", user_id, debit, exc)
            raise
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.exception("credit_spend_failed user=%s cost=%s", user_id, debit)
            raise PersistenceError("Database error while spending credits.") from exc

        logger.info("credit_spend user=%s cost=%s balance=%s", user_id, debit, snapshot.credits_balance)
        return SpendResult(
            granted=True,
            charged=debit,
            remaining_balance=snapshot.credits_balance,
            entry_id=snapshot.entry_id,
        )

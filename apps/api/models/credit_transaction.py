"""CreditTransaction model: append-only log of balance changes."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


TRANSACTION_TYPES = ("purchase", "usage", "admin_add", "billing_issue")


class CreditTransaction(Base):
    """Immutable credit transaction entry."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    type = Column(String, nullable=False)
    payment_id = Column(String, ForeignKey("payments.id"), nullable=True)
    # Client-reported store transaction; unique so replays of POST /credits/purchase are no-ops.
    transaction_id = Column(String, unique=True, nullable=True)
    product_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="credit_transactions")
    payment = relationship("Payment")

"""Payment model: audit log of processed billing events."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Payment(Base):
    """Immutable record of one processed webhook event outcome.

    ``transaction_id`` holds the RevenueCat event id and is the idempotency
    key. ``store_transaction_id`` is the App Store / Play Store id, kept for
    support lookups only.
    """

    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Float, nullable=False, default=0)
    currency = Column(String, nullable=True, default="USD")
    status = Column(String, nullable=False, default="Success")
    product_id = Column(String, nullable=True)
    transaction_id = Column(String, unique=True, nullable=False)
    store_transaction_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="payments")

"""Account model for authenticated app users."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, false
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Account(Base):
    """One row per authenticated end user, holding balance and subscription state."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("credits_balance >= 0", name="ck_accounts_credits_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=True, index=True)
    name = Column(String, nullable=True)
    credits_balance = Column(Integer, nullable=False, default=0, server_default="0")
    is_pro_member = Column(Boolean, nullable=False, default=False, server_default=false())
    pro_membership_expires_at = Column(DateTime(timezone=True), nullable=True)
    subscription_in_grace_period = Column(Boolean, nullable=False, default=False, server_default=false())
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_transactions = relationship(
        "CreditTransaction", back_populates="account", cascade="all, delete-orphan"
    )
    payments = relationship("Payment", back_populates="account", cascade="all, delete-orphan")
    generations = relationship("Generation", back_populates="account", cascade="all, delete-orphan")

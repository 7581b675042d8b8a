"""Generation model: one row per paid stylization request."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


GENERATION_STATUSES = ("pending", "completed", "failed")


class Generation(Base):
    """Stylization request paid for by a ``usage`` credit transaction."""

    __tablename__ = "cartoon_generations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    original_image_url = Column(Text, nullable=False)
    generated_image_url = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="pending")
    credits_used = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    account = relationship("Account", back_populates="generations")

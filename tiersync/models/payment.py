"""
TierSync - Payment Model
Provider payment attempts, keyed by the provider payment id.
"""

from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Text
from sqlalchemy.orm import relationship

from tiersync.core.database import Base


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dodo_payment_id = Column(String(255), unique=True, nullable=False, index=True)
    user_uuid = Column(String(36), ForeignKey("users.user_uuid"), nullable=False, index=True)
    session_id = Column(String(255), nullable=True)
    status = Column(String(20), default="PENDING", nullable=False)  # PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED, DISPUTED, REFUNDED
    amount_cents = Column(Integer, nullable=True)
    currency = Column(String(10), nullable=True)
    tier = Column(String(50), nullable=True)
    dodo_subscription_id = Column(String(255), nullable=True)
    payment_link = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    raw_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    user = relationship("User", back_populates="payments")

    def __repr__(self):
        return f"<Payment(id='{self.dodo_payment_id}', status='{self.status}')>"

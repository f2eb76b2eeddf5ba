"""
TierSync - Checkout Session Model
One row per checkout attempt, tracked until it resolves or expires.
"""

from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from tiersync.core.database import Base


class CheckoutSession(Base):
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(255), unique=True, nullable=False, index=True)
    user_uuid = Column(String(36), ForeignKey("users.user_uuid"), nullable=False, index=True)
    status = Column(String(20), default="PENDING", nullable=False)  # PENDING, COMPLETED, FAILED, EXPIRED
    mode = Column(String(20), default="SUBSCRIPTION", nullable=False)
    requested_tier = Column(String(50), nullable=True)
    payment_id = Column(String(255), nullable=True)
    subscription_id = Column(String(255), nullable=True, index=True)
    created_date = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="sessions")

    def __repr__(self):
        return f"<CheckoutSession(session_id='{self.session_id}', status='{self.status}')>"

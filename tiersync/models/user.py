"""
TierSync - User Model
One row per end-user: current tier, subscription status and the
pending plan-change fields.
"""

import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship

from tiersync.core.database import Base

# Expiry given to FREE users created by ensure-user
FREE_TIER_EXPIRY = datetime(2099, 12, 31, 23, 59, 59, tzinfo=timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_uuid = Column(String(36), unique=True, nullable=False, index=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    dodo_customer_id = Column(String(255), nullable=True, index=True)

    active_tier = Column(String(50), nullable=True)  # FREE, BASIC, PRO, PROFESSIONAL, BUSINESS, ENTERPRISE
    active_length = Column(String(20), nullable=True)  # MONTHLY, YEARLY
    tier_expires_at = Column(DateTime(timezone=True), nullable=True)
    subscription_status = Column(String(20), nullable=True)  # ACTIVE, GRACE, EXPIRED, FAILED, ON_HOLD, CANCELLED
    subscription_id = Column(String(255), nullable=True, index=True)

    # Plan change: the pending_* columns are set and cleared together
    plan_change_status = Column(String(20), nullable=True)  # PENDING, COMPLETED, PAYMENT_NEEDED
    pending_tier = Column(String(50), nullable=True)
    pending_active_length = Column(String(20), nullable=True)
    pending_tier_effective_date = Column(DateTime(timezone=True), nullable=True)
    pending_change_type = Column(String(40), nullable=True)
    pending_product_id = Column(String(255), nullable=True)
    plan_change_initiated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    sessions = relationship("CheckoutSession", back_populates="user")
    payments = relationship("Payment", back_populates="user")

    @property
    def has_pending_change(self) -> bool:
        return self.pending_tier is not None

    def __repr__(self):
        return f"<User(uuid='{self.user_uuid}', email='{self.email}', tier='{self.active_tier}')>"

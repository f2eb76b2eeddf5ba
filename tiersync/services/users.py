"""
TierSync - Users
"""
import logging
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tiersync.core.errors import ConflictError, NotFoundError, ValidationError
from tiersync.models.statuses import FREE_TIER
from tiersync.models.user import FREE_TIER_EXPIRY, User

logger = logging.getLogger(__name__)


async def ensure_user(db: AsyncSession, email: str, user_uuid: Optional[str] = None) -> Tuple[User, bool]:
    """Return the user for this email, creating a FREE user on first call."""
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is not None:
        return user, False

    if user_uuid:
        result = await db.execute(select(User).where(User.user_uuid == user_uuid))
        if result.scalar_one_or_none() is not None:
            raise ConflictError("user_uuid_conflict", f"user_uuid {user_uuid} belongs to another email")

    user = User(email=email, active_tier=FREE_TIER, tier_expires_at=FREE_TIER_EXPIRY)
    if user_uuid:
        user.user_uuid = user_uuid
    db.add(user)
    await db.flush()
    logger.info(f"Created user {user.user_uuid} for {email}")
    return user, True


async def require_user(db: AsyncSession, email: Optional[str], message: str = "User not found") -> User:
    if not email:
        raise ValidationError("customer_email_required", "customer_email is required")
    result = await db.execute(select(User).where(User.email == email).execution_options(populate_existing=True))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("user_not_found", message)
    return user

"""
TierSync - Session Correlator
Ties checkout sessions to users, payments and subscriptions, and keeps a user
from holding more than one fresh pending checkout.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tiersync.core.config import settings
from tiersync.core.errors import ProviderError
from tiersync.core.timeutils import as_utc, utcnow
from tiersync.models.checkout_session import CheckoutSession
from tiersync.models.statuses import SessionStatus
from tiersync.models.user import User
from tiersync.services import dodo_payments

logger = logging.getLogger(__name__)

CHECKOUT_STATUS_MAP = {
    "succeeded": SessionStatus.COMPLETED,
    "completed": SessionStatus.COMPLETED,
    "paid": SessionStatus.COMPLETED,
    "pending": SessionStatus.PENDING,
    "failed": SessionStatus.FAILED,
    "cancelled": SessionStatus.FAILED,
    "expired": SessionStatus.EXPIRED,
}


def map_checkout_status(provider_status: Optional[str]) -> str:
    if not provider_status:
        return SessionStatus.PENDING
    return CHECKOUT_STATUS_MAP.get(provider_status.lower(), SessionStatus.PENDING)


# ── Lookups ──────────────────────────────────────────────────────────────────
async def find_user(
    db: AsyncSession,
    user_uuid: Optional[str] = None,
    email: Optional[str] = None,
) -> Optional[User]:
    """
    Metadata user_uuid first, then email. Always re-reads the row so that
    handlers gate on current state, not on what the session last saw.
    """
    user = None
    if user_uuid:
        user = await _fresh_user(db, User.user_uuid == user_uuid)
    if user is None and email:
        user = await _fresh_user(db, User.email == email)
    return user


async def _fresh_user(db: AsyncSession, criterion) -> Optional[User]:
    result = await db.execute(select(User).where(criterion).execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_session(db: AsyncSession, session_id: str) -> Optional[CheckoutSession]:
    result = await db.execute(select(CheckoutSession).where(CheckoutSession.session_id == session_id))
    return result.scalar_one_or_none()


async def latest_pending_session(db: AsyncSession, user_uuid: str) -> Optional[CheckoutSession]:
    result = await db.execute(
        select(CheckoutSession)
        .where(CheckoutSession.user_uuid == user_uuid, CheckoutSession.status == SessionStatus.PENDING)
        .order_by(CheckoutSession.created_date.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def correlate_session(
    db: AsyncSession,
    user_uuid: str,
    session_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
) -> Optional[CheckoutSession]:
    """
    Find the checkout an event belongs to: explicit session id, then a session
    already carrying the subscription id, then the user's newest pending one.
    """
    if session_id:
        session = await get_session(db, session_id)
        if session is not None:
            return session

    if subscription_id:
        result = await db.execute(
            select(CheckoutSession)
            .where(CheckoutSession.subscription_id == subscription_id)
            .order_by(CheckoutSession.created_date.desc())
            .limit(1)
        )
        session = result.scalar_one_or_none()
        if session is not None:
            return session

    session = await latest_pending_session(db, user_uuid)
    if session is None:
        logger.info(f"No checkout session correlated for user {user_uuid}")
    return session


# ── Transitions ──────────────────────────────────────────────────────────────
async def transition_session(db: AsyncSession, session_id: str, status: str, **values: Any) -> bool:
    """Move a PENDING session to `status`. Terminal sessions are left alone."""
    result = await db.execute(
        update(CheckoutSession)
        .where(CheckoutSession.session_id == session_id, CheckoutSession.status == SessionStatus.PENDING)
        .values(status=status, **values)
    )
    changed = result.rowcount > 0
    if changed:
        logger.info(f"Session {session_id} -> {status}")
    else:
        logger.debug(f"Session {session_id} not pending, left unchanged")
    return changed


async def complete_session(
    db: AsyncSession,
    session_id: str,
    payment_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> bool:
    values: Dict[str, Any] = {"completed_at": utcnow()}
    if payment_id:
        values["payment_id"] = payment_id
    if subscription_id:
        values["subscription_id"] = subscription_id
    if expires_at:
        values["expires_at"] = expires_at
    return await transition_session(db, session_id, SessionStatus.COMPLETED, **values)


async def create_session(
    db: AsyncSession,
    session_id: str,
    user_uuid: str,
    requested_tier: Optional[str],
) -> CheckoutSession:
    session = CheckoutSession(
        session_id=session_id,
        user_uuid=user_uuid,
        status=SessionStatus.PENDING,
        requested_tier=requested_tier,
        created_date=utcnow(),
    )
    db.add(session)
    await db.flush()
    return session


# ── Checkout reuse ───────────────────────────────────────────────────────────
def is_fresh(session: CheckoutSession, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    age = now - as_utc(session.created_date)
    return age < timedelta(minutes=settings.SESSION_FRESHNESS_MINUTES)


async def find_or_reuse_pending_session(
    db: AsyncSession,
    user: User,
    now: Optional[datetime] = None,
) -> Optional[CheckoutSession]:
    """
    Return a pending checkout the user can be sent back to, or None when a
    new one must be created.

    Fresh sessions are reused without asking the provider. Older ones are
    checked upstream: no payment yet means reusable, a payment means the local
    row is completed, and a failed lookup means it is expired.
    """
    now = now or utcnow()
    session = await latest_pending_session(db, user.user_uuid)
    if session is None:
        return None

    if is_fresh(session, now):
        logger.info(f"Reusing fresh checkout session {session.session_id} for user {user.user_uuid}")
        return session

    logger.info(f"Checkout session {session.session_id} is stale, verifying with provider")
    try:
        checkout = await dodo_payments.retrieve_checkout_session(session.session_id)
    except ProviderError as e:
        logger.warning(f"Could not retrieve checkout {session.session_id} ({e.message}), marking as expired")
        await transition_session(db, session.session_id, SessionStatus.EXPIRED)
        return None

    payment_id = checkout.get("payment_id")
    if not payment_id:
        logger.info(f"Checkout session {session.session_id} still unpaid, reusing it")
        return session

    logger.warning(f"Checkout {session.session_id} already has payment {payment_id}, marking as completed")
    await complete_session(
        db,
        session.session_id,
        payment_id=payment_id,
        subscription_id=checkout.get("subscription_id"),
    )
    return None

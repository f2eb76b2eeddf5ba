"""
TierSync - Payment Records
Idempotent payment writes keyed by the provider payment id.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from tiersync.core.timeutils import utcnow
from tiersync.models.payment import Payment
from tiersync.models.statuses import PaymentStatus

logger = logging.getLogger(__name__)

# Statuses an upsert may still move away from
OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

_UPSERT_COLUMNS = (
    "user_uuid",
    "status",
    "amount_cents",
    "currency",
    "tier",
    "dodo_subscription_id",
    "payment_link",
    "raw_json",
    "updated_at",
)


def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Payment upsert is not supported on {dialect}")


async def upsert_payment(
    db: AsyncSession,
    dodo_payment_id: str,
    user_uuid: str,
    status: str,
    amount_cents: Optional[int] = None,
    currency: Optional[str] = None,
    tier: Optional[str] = None,
    dodo_subscription_id: Optional[str] = None,
    payment_link: Optional[str] = None,
    paid_at: Optional[datetime] = None,
    raw_json: Optional[Dict[str, Any]] = None,
    session_id: Optional[str] = None,
) -> None:
    """
    INSERT ... ON CONFLICT DO UPDATE on dodo_payment_id.

    The first paid_at wins, and a row already in a terminal status is only
    rewritten by a delivery carrying that same status.
    """
    now = utcnow()
    table = Payment.__table__
    insert = _insert_for(db)

    stmt = insert(table).values(
        dodo_payment_id=dodo_payment_id,
        user_uuid=user_uuid,
        session_id=session_id,
        status=status,
        amount_cents=amount_cents,
        currency=currency,
        tier=tier,
        dodo_subscription_id=dodo_subscription_id,
        payment_link=payment_link,
        paid_at=paid_at,
        raw_json=raw_json,
        created_at=now,
        updated_at=now,
    )
    set_ = {name: stmt.excluded[name] for name in _UPSERT_COLUMNS}
    set_["paid_at"] = func.coalesce(table.c.paid_at, stmt.excluded.paid_at)
    set_["session_id"] = func.coalesce(stmt.excluded.session_id, table.c.session_id)
    set_["payment_link"] = func.coalesce(stmt.excluded.payment_link, table.c.payment_link)

    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.dodo_payment_id],
        set_=set_,
        where=or_(
            table.c.status.in_(OPEN_PAYMENT_STATUSES),
            table.c.status == stmt.excluded.status,
        ),
    )
    await db.execute(stmt)
    logger.info(f"Upserted payment {dodo_payment_id} as {status}")


async def link_payment_to_session(db: AsyncSession, dodo_payment_id: str, session_id: str) -> None:
    await db.execute(
        update(Payment.__table__)
        .where(Payment.__table__.c.dodo_payment_id == dodo_payment_id)
        .values(session_id=session_id)
    )


async def get_payment(db: AsyncSession, dodo_payment_id: str) -> Optional[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.dodo_payment_id == dodo_payment_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def set_payment_status(
    db: AsyncSession,
    dodo_payment_id: str,
    status: str,
    raw_json: Optional[Dict[str, Any]] = None,
) -> bool:
    """Dispute/refund transitions layered on top of an existing payment."""
    values: Dict[str, Any] = {"status": status, "updated_at": utcnow()}
    if raw_json is not None:
        values["raw_json"] = raw_json
    result = await db.execute(
        update(Payment.__table__)
        .where(Payment.__table__.c.dodo_payment_id == dodo_payment_id)
        .values(**values)
    )
    return result.rowcount > 0


async def find_open_payment(db: AsyncSession, user_uuid: str, statuses=OPEN_PAYMENT_STATUSES) -> Optional[Payment]:
    """Most recent payment for the user still in one of the given statuses."""
    result = await db.execute(
        select(Payment)
        .where(Payment.user_uuid == user_uuid, Payment.status.in_(statuses))
        .order_by(Payment.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()

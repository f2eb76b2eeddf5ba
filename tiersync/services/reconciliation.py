"""
TierSync - Reconciliation Job
Periodic backstop for webhooks that never arrived:
expires stale pending checkouts, moves lapsed users into GRACE and then
EXPIRED, and applies scheduled plan changes whose effective date has passed.

Runs on an APScheduler AsyncIOScheduler, once immediately on start and then
every CLEANUP_INTERVAL_MINUTES. Writes rely on conditional UPDATEs rather than
application locks, so webhooks may arrive concurrently.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tiersync.core.config import settings
from tiersync.core.timeutils import utcnow
from tiersync.models.checkout_session import CheckoutSession
from tiersync.models.statuses import PlanChangeStatus, SessionStatus, SubscriptionStatus
from tiersync.models.user import User
from tiersync.services.subscription_state import SubscriptionStateMachine

logger = logging.getLogger(__name__)

JOB_ID = "reconciliation"


@dataclass
class ReconciliationConfig:
    session_timeout_minutes: int = 30
    cleanup_interval_minutes: int = 5
    grace_period_days: int = 7
    verbose: bool = False

    @classmethod
    def from_settings(cls) -> "ReconciliationConfig":
        return cls(
            session_timeout_minutes=settings.SESSION_TIMEOUT_MINUTES,
            cleanup_interval_minutes=settings.CLEANUP_INTERVAL_MINUTES,
            grace_period_days=settings.GRACE_PERIOD_DAYS,
            verbose=settings.RECONCILIATION_VERBOSE,
        )


# ── Sweeps ───────────────────────────────────────────────────────────────────
async def expire_stale_sessions(db: AsyncSession, now: datetime, timeout_minutes: int) -> int:
    cutoff = now - timedelta(minutes=timeout_minutes)
    result = await db.execute(
        update(CheckoutSession)
        .where(CheckoutSession.status == SessionStatus.PENDING, CheckoutSession.created_date < cutoff)
        .values(status=SessionStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _lapsed_user_criteria(now: datetime):
    return (
        User.tier_expires_at.is_not(None),
        User.tier_expires_at < now,
        or_(
            User.subscription_status.is_(None),
            User.subscription_status.not_in((SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED)),
        ),
    )


async def advance_expired_users(db: AsyncSession, now: datetime, grace_period_days: int) -> Dict[str, int]:
    """Bulk move lapsed users to GRACE inside the window and EXPIRED past it."""
    grace_cutoff = now - timedelta(days=grace_period_days)
    lapsed = _lapsed_user_criteria(now)

    to_grace = await db.execute(
        update(User)
        .where(
            *lapsed,
            User.tier_expires_at >= grace_cutoff,
            User.subscription_status.is_distinct_from(SubscriptionStatus.GRACE),
        )
        .values(subscription_status=SubscriptionStatus.GRACE)
        .execution_options(synchronize_session=False)
    )
    to_expired = await db.execute(
        update(User)
        .where(*lapsed, User.tier_expires_at < grace_cutoff)
        .values(subscription_status=SubscriptionStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    return {"grace": to_grace.rowcount, "expired": to_expired.rowcount}


async def due_plan_change_user_ids(db: AsyncSession, now: datetime):
    result = await db.execute(
        select(User.id).where(
            User.pending_tier.is_not(None),
            User.pending_tier_effective_date.is_not(None),
            User.pending_tier_effective_date <= now,
            or_(
                User.plan_change_status.is_(None),
                User.plan_change_status == PlanChangeStatus.COMPLETED,
            ),
        )
    )
    return list(result.scalars().all())


async def collect_status_counts(db: AsyncSession) -> Dict[str, int]:
    async def count(stmt) -> int:
        return (await db.execute(stmt)).scalar_one()

    return {
        "pending_sessions": await count(
            select(func.count(CheckoutSession.id)).where(CheckoutSession.status == SessionStatus.PENDING)
        ),
        "grace_period_users": await count(
            select(func.count(User.id)).where(User.subscription_status == SubscriptionStatus.GRACE)
        ),
        "expired_users": await count(
            select(func.count(User.id)).where(User.subscription_status == SubscriptionStatus.EXPIRED)
        ),
    }


# ── Job ──────────────────────────────────────────────────────────────────────
class ReconciliationJob:
    """Single-flight periodic job. Built once in the app lifespan."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        state_machine: SubscriptionStateMachine,
        config: Optional[ReconciliationConfig] = None,
    ):
        self._session_factory = session_factory
        self._state_machine = state_machine
        self.config = config or ReconciliationConfig()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self.last_run_at: Optional[datetime] = None
        self.last_result: Optional[Dict[str, Any]] = None

    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self, config: Optional[ReconciliationConfig] = None) -> None:
        if self._scheduler is not None:
            logger.info("Reconciliation job already running, ignoring start")
            return
        if config is not None:
            self.config = config

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(minutes=self.config.cleanup_interval_minutes),
            id=JOB_ID,
            name="Reconciliation Job",
            replace_existing=True,
            max_instances=1,  # Prevent overlapping runs
            coalesce=True,
            next_run_time=utcnow(),
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            f"Reconciliation job started: every {self.config.cleanup_interval_minutes} min, "
            f"session timeout {self.config.session_timeout_minutes} min, "
            f"grace {self.config.grace_period_days} days"
        )

    def stop(self) -> None:
        """Prevent future runs. A sweep already in flight is not interrupted."""
        if self._scheduler is None:
            return
        try:
            self._scheduler.shutdown(wait=False)
        finally:
            self._scheduler = None
        logger.info("Reconciliation job stopped")

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run all three sweeps. A failing sweep does not stop the others."""
        now = now or utcnow()
        result: Dict[str, Any] = {}

        try:
            async with self._session_factory() as db:
                result["expired_sessions"] = await expire_stale_sessions(
                    db, now, self.config.session_timeout_minutes
                )
                await db.commit()
        except Exception:
            logger.exception("Stale session sweep failed")

        try:
            async with self._session_factory() as db:
                result["users"] = await advance_expired_users(db, now, self.config.grace_period_days)
                await db.commit()
        except Exception:
            logger.exception("Grace period sweep failed")

        try:
            result["applied_plan_changes"] = await self.apply_due_plan_changes(now)
        except Exception:
            logger.exception("Pending plan change sweep failed")

        self.last_run_at = now
        self.last_result = result
        if self.config.verbose or any(self._changed(v) for v in result.values()):
            logger.info(f"Reconciliation run complete: {result}")
        return result

    @staticmethod
    def _changed(value) -> bool:
        if isinstance(value, dict):
            return any(value.values())
        return bool(value)

    async def apply_due_plan_changes(self, now: datetime) -> int:
        async with self._session_factory() as db:
            user_ids = await due_plan_change_user_ids(db, now)

        applied = 0
        for user_id in user_ids:
            try:
                async with self._session_factory() as db:
                    user = await db.get(User, user_id)
                    if user is None:
                        continue
                    if await self._state_machine.apply_pending_change_if_due(db, user, now):
                        applied += 1
                    await db.commit()
            except Exception:
                logger.exception(f"Failed to apply pending plan change for user id {user_id}")
        return applied

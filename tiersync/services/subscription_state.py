"""
TierSync - Subscription State Machine
One handler per webhook event type. Handlers read the user record and apply
a bounded set of conditional writes.

Every tier grant goes through `grant_tier` or `apply_pending_change`, both of
which refuse to touch a user whose plan change is still waiting on payment
(plan_change_status = PENDING). Revocations (cancellation, expiry, full
refund) are unconditional.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from tiersync.core.timeutils import as_utc, utcnow
from tiersync.models.statuses import (
    FREE_TIER,
    PaymentStatus,
    PlanChangeStatus,
    SessionStatus,
    SubscriptionStatus,
)
from tiersync.models.user import User
from tiersync.services.payment_records import (
    get_payment,
    link_payment_to_session,
    set_payment_status,
    upsert_payment,
)
from tiersync.services.session_correlator import (
    complete_session,
    correlate_session,
    find_user,
    transition_session,
)
from tiersync.services.tier_catalog import TierCatalog, TierConfig
from tiersync.services.tier_comparison import (
    ChangeType,
    determine_change_type,
    normalize_billing_frequency,
)
from tiersync.services.webhook_events import (
    CheckoutEvent,
    CustomerEvent,
    DisputeEvent,
    PaymentData,
    PaymentEvent,
    RefundEvent,
    SubscriptionData,
    SubscriptionEvent,
)

logger = logging.getLogger(__name__)

# Subscription statuses a failure/on-hold event must not overwrite
FAILURE_IMMUNE_STATUSES = (
    SubscriptionStatus.GRACE,
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED,
)

ENDED_PROVIDER_STATUSES = ("cancelled", "canceled", "expired")

CLEARED_PENDING_CHANGE = {
    "plan_change_status": None,
    "pending_tier": None,
    "pending_active_length": None,
    "pending_tier_effective_date": None,
    "pending_change_type": None,
    "pending_product_id": None,
    "plan_change_initiated_at": None,
}

NOT_AWAITING_PAYMENT = User.plan_change_status.is_distinct_from(PlanChangeStatus.PENDING)


class GateDecision:
    HOLD = "HOLD"
    APPLY_EVENT = "APPLY_EVENT"
    APPLY_PENDING = "APPLY_PENDING"


def pending_change_gate(user: User, now: datetime) -> str:
    """
    Decide what a tier-bearing subscription event may do to this user.

    HOLD: a plan change is waiting on payment, or a scheduled change is not
    due yet; leave the tier alone. APPLY_PENDING: a scheduled or paid change
    is due and should be applied. APPLY_EVENT: nothing pending, take the
    event's tier.
    """
    if user.plan_change_status in (PlanChangeStatus.PENDING, PlanChangeStatus.PAYMENT_NEEDED):
        return GateDecision.HOLD
    if not user.pending_tier:
        return GateDecision.APPLY_EVENT
    effective = as_utc(user.pending_tier_effective_date)
    if effective is None or effective <= now:
        return GateDecision.APPLY_PENDING
    return GateDecision.HOLD


def _amount_cents(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric amount {value!r}")
        return None


class SubscriptionStateMachine:
    def __init__(self, catalog: TierCatalog, clock: Callable[[], datetime] = utcnow):
        self.catalog = catalog
        self.clock = clock

    # ── Shared primitives ────────────────────────────────────────────────
    async def _user_for(self, db: AsyncSession, data, event_type: str) -> Optional[User]:
        if not data.user_uuid and not data.customer_email:
            logger.error(f"{event_type}: no user_uuid or customer_email in payload")
            return None
        user = await find_user(db, data.user_uuid, data.customer_email)
        if user is None:
            logger.error(f"{event_type}: user not found (uuid={data.user_uuid}, email={data.customer_email})")
        return user

    async def _update_user(self, db: AsyncSession, user: User, *criteria, **values) -> bool:
        if not values:
            return False
        result = await db.execute(update(User).where(User.id == user.id, *criteria).values(**values))
        return result.rowcount > 0

    def _identity_values(
        self,
        user: User,
        customer_id: Optional[str],
        subscription_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        if customer_id and customer_id != user.dodo_customer_id:
            values["dodo_customer_id"] = customer_id
        if subscription_id and subscription_id != user.subscription_id:
            values["subscription_id"] = subscription_id
        return values

    def _event_tier(self, data: SubscriptionData) -> Tuple[Optional[str], Optional[str], Optional[TierConfig]]:
        """The current product id wins over the tier requested at checkout."""
        config = self.catalog.resolve(data.product_id)
        if config is not None:
            length = config.billing_frequency or normalize_billing_frequency(data.payment_frequency_interval)
            return config.code, length, config
        tier = data.metadata.get("requested_tier")
        return tier, normalize_billing_frequency(data.payment_frequency_interval), None

    def _event_expiry(self, data: SubscriptionData, config: Optional[TierConfig]) -> Optional[datetime]:
        if data.period_end:
            return data.period_end
        if config is not None:
            return self.catalog.expiration_for(config)
        return None

    async def grant_tier(
        self,
        db: AsyncSession,
        user: User,
        tier: str,
        length: Optional[str],
        expires_at: Optional[datetime],
        **extra: Any,
    ) -> bool:
        """Set the active tier unless a plan change is awaiting payment."""
        values = {"active_tier": tier, "active_length": length, **extra}
        if expires_at is not None:
            values["tier_expires_at"] = expires_at
        elif user.tier_expires_at is None:
            logger.warning(f"Granting {tier} to {user.user_uuid} without a known expiry")
        granted = await self._update_user(db, user, NOT_AWAITING_PAYMENT, **values)
        if granted:
            logger.info(f"User {user.user_uuid} tier -> {tier}/{length}, expires {expires_at}")
        else:
            logger.info(f"User {user.user_uuid} has a plan change awaiting payment, tier left unchanged")
        return granted

    async def apply_pending_change(
        self,
        db: AsyncSession,
        user: User,
        expires_at: Optional[datetime] = None,
        tier: Optional[str] = None,
        length: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Promote the pending tier to active and clear every pending field."""
        new_tier = tier or user.pending_tier
        new_length = length or user.pending_active_length
        if expires_at is None:
            config = self.catalog.resolve(user.pending_product_id)
            expires_at = self.catalog.expiration_for(config) if config else as_utc(user.tier_expires_at)

        values = {
            "active_tier": new_tier,
            "active_length": new_length,
            "tier_expires_at": expires_at,
            **CLEARED_PENDING_CHANGE,
            **(extra or {}),
        }
        applied = await self._update_user(
            db,
            user,
            NOT_AWAITING_PAYMENT,
            User.pending_tier.is_not(None),
            **values,
        )
        if applied:
            logger.info(
                f"Applied pending change for {user.user_uuid}: {user.active_tier} -> {new_tier}/{new_length}"
            )
        return applied

    async def apply_pending_change_if_due(
        self,
        db: AsyncSession,
        user: User,
        now: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        now = now or self.clock()
        if pending_change_gate(user, now) != GateDecision.APPLY_PENDING:
            return False
        return await self.apply_pending_change(db, user, expires_at=expires_at, extra=extra)

    async def revoke(
        self,
        db: AsyncSession,
        user: User,
        status: Optional[str],
        expires_at: Optional[datetime],
    ) -> None:
        await self._update_user(
            db,
            user,
            active_tier=FREE_TIER,
            active_length=None,
            tier_expires_at=expires_at or self.clock(),
            subscription_status=status,
            **CLEARED_PENDING_CHANGE,
        )
        logger.info(f"User {user.user_uuid} reverted to {FREE_TIER} (status={status})")

    def _payment_tier(self, data: PaymentData) -> Optional[str]:
        return data.metadata.get("requested_tier") or self.catalog.tier_code_of(data.first_product_id)

    async def _record_payment(self, db: AsyncSession, user: User, event: PaymentEvent, status: str, paid_at=None):
        data = event.data
        await upsert_payment(
            db,
            data.payment_id,
            user.user_uuid,
            status,
            amount_cents=data.total_amount,
            currency=data.currency,
            tier=self._payment_tier(data),
            dodo_subscription_id=data.subscription_id,
            payment_link=data.payment_link,
            paid_at=paid_at,
            raw_json=event.raw,
            session_id=data.metadata.get("session_id"),
        )

    # ── Payment events ───────────────────────────────────────────────────
    async def payment_succeeded(self, db: AsyncSession, event: PaymentEvent) -> None:
        data = event.data
        user = await self._user_for(db, data, event.event_type)
        if user is None:
            return

        await self._record_payment(db, user, event, PaymentStatus.COMPLETED, paid_at=self.clock())

        session = await correlate_session(db, user.user_uuid, data.metadata.get("session_id"), data.subscription_id)
        if session is not None:
            await complete_session(db, session.session_id, payment_id=data.payment_id, subscription_id=data.subscription_id)
            await link_payment_to_session(db, data.payment_id, session.session_id)

        identity = self._identity_values(user, data.customer_id, data.subscription_id)

        # The new tier itself arrives with the next subscription event
        confirmed = await self._update_user(
            db,
            user,
            User.plan_change_status == PlanChangeStatus.PENDING,
            plan_change_status=PlanChangeStatus.COMPLETED,
            **identity,
        )
        if confirmed:
            logger.info(f"Plan change payment confirmed for {user.user_uuid}, awaiting subscription event for tier")
            return

        await self._update_user(db, user, **identity)
        logger.info(f"Payment {data.payment_id} succeeded for {user.user_uuid}")

    async def payment_failed(self, db: AsyncSession, event: PaymentEvent) -> None:
        data = event.data
        user = await self._user_for(db, data, event.event_type)
        if user is None:
            return

        await self._record_payment(db, user, event, PaymentStatus.FAILED)

        session_id = data.metadata.get("session_id")
        if session_id:
            await transition_session(db, session_id, SessionStatus.FAILED)

        demoted = await self._update_user(
            db,
            user,
            User.plan_change_status == PlanChangeStatus.PENDING,
            plan_change_status=PlanChangeStatus.PAYMENT_NEEDED,
        )
        if demoted:
            logger.warning(f"Plan change payment failed for {user.user_uuid}, marked PAYMENT_NEEDED")

    async def payment_processing(self, db: AsyncSession, event: PaymentEvent) -> None:
        user = await self._user_for(db, event.data, event.event_type)
        if user is None:
            return
        await self._record_payment(db, user, event, PaymentStatus.PROCESSING)

    async def payment_cancelled(self, db: AsyncSession, event: PaymentEvent) -> None:
        data = event.data
        user = await self._user_for(db, data, event.event_type)
        if user is None:
            return

        await self._record_payment(db, user, event, PaymentStatus.CANCELLED)
        session = await correlate_session(db, user.user_uuid, data.metadata.get("session_id"), data.subscription_id)
        if session is not None:
            await transition_session(db, session.session_id, SessionStatus.FAILED)

    # ── Subscription events ──────────────────────────────────────────────
    async def subscription_created(self, db: AsyncSession, event: SubscriptionEvent) -> None:
        data = event.data
        user = await self._user_for(db, data, event.event_type)
        if user is None:
            return

        await self._update_user(db, user, **self._identity_values(user, data.customer_id, data.subscription_id))

        if (data.status or "").lower() != "active":
            logger.info(f"Subscription {data.subscription_id} created with status {data.status}, tier deferred")
            return

        tier, length, config = self._event_tier(data)
        if tier:
            await self.grant_tier(
                db,
                user,
                tier,
                length,
                self._event_expiry(data, config),
                subscription_status=SubscriptionStatus.ACTIVE,
            )

    async def subscription_active(self, db: AsyncSession, event: SubscriptionEvent) -> None:
        data = event.data
        user = await self._user_for(db, data, event.event_type)
        if user is None:
            return

        await self._update_user(
            db,
            user,
            subscription_status=SubscriptionStatus.ACTIVE,
            **self._identity_values(user, data.customer_id, data.subscription_id),
        )

        tier, length, config = self._event_tier(data)
        if tier:
            await self.grant_tier(db, user, tier, length, self._event_expiry(data, config))

        session = await correlate_session(db, user.user_uuid, data.metadata.get("session_id"), data.subscription_id)
        if session is not None:
            await complete_session(
                db,
                session.session_id,
                subscription_id=data.subscription_id,
                expires_at=data.period_end,
            )

    async def subscription_updated(self, db: AsyncSession, event: SubscriptionEvent) -> None:
        data = event.data
        user = await self._user_for(db, data, event.event_type)
        if user is None:
            return

        if (data.status or "").lower() in ENDED_PROVIDER_STATUSES:
            ended = SubscriptionStatus.EXPIRED if data.status.lower() == "expired" else SubscriptionStatus.CANCELLED
            await self.revoke(db, user, ended, data.cancelled_at or data.expires_at)
            return

        now = self.clock()
        tier, length, config = self._event_tier(data)
        expires_at = self._event_expiry(data, config)
        identity = self._identity_values(user, data.customer_id, data.subscription_id)

        if (data.status or "").lower() != "active":
            values = dict(identity)
            if expires_at is not None:
                values["tier_expires_at"] = expires_at
            await self._update_user(db, user, **values)
            logger.info(f"Subscription {data.subscription_id} updated with status {data.status}, tier unchanged")
            return

        decision = pending_change_gate(user, now)
        stale_product = (
            decision == GateDecision.APPLY_PENDING
            and user.pending_product_id
            and data.product_id
            and data.product_id != user.pending_product_id
        )
        if decision == GateDecision.HOLD or stale_product:
            values = dict(identity)
            if expires_at is not None:
                values["tier_expires_at"] = expires_at
            await self._update_user(db, user, **values)
            logger.info(
                f"Subscription update for {user.user_uuid} held (plan change {user.plan_change_status}), "
                f"tier stays {user.active_tier}"
            )
            return

        if decision == GateDecision.APPLY_PENDING:
            await self.apply_pending_change(db, user, expires_at=expires_at, tier=tier, length=length, extra=identity)
            return

        if tier:
            await self.grant_tier(db, user, tier, length, expires_at, **identity)
        else:
            logger.warning(f"Could not resolve tier for product {data.product_id}")
            await self._update_user(db, user, **identity)

    async def subscription_renewed(self, db: AsyncSession, event: SubscriptionEvent) -> None:
        data = event.data
        user = await self._user_for(db, data, event.event_type)
        if user is None:
            return

        now = self.clock()
        extra = {
            "subscription_status": SubscriptionStatus.ACTIVE,
            **self._identity_values(user, data.customer_id, data.subscription_id),
        }

        if pending_change_gate(user, now) == GateDecision.APPLY_PENDING:
            expires_at = data.period_end
            if expires_at is None:
                config = self.catalog.resolve(user.pending_product_id)
                expires_at = self.catalog.expiration_for(config) if config else None
            if await self.apply_pending_change(db, user, expires_at=expires_at, extra=extra):
                return

        _, _, config = self._event_tier(data)
        expires_at = self._event_expiry(data, config)
        if expires_at is not None:
            extra["tier_expires_at"] = expires_at
        await self._update_user(db, user, **extra)
        logger.info(f"Subscription {data.subscription_id} renewed for {user.user_uuid} until {expires_at}")

    async def subscription_cancelled(self, db: AsyncSession, event: SubscriptionEvent) -> None:
        data = event.data
        user = await self._user_for(db, data, event.event_type)
        if user is None:
            return
        await self.revoke(db, user, SubscriptionStatus.CANCELLED, data.cancelled_at)

    async def subscription_expired(self, db: AsyncSession, event: SubscriptionEvent) -> None:
        data = event.data
        user = await self._user_for(db, data, event.event_type)
        if user is None:
            return
        await self.revoke(db, user, SubscriptionStatus.EXPIRED, data.expires_at)

    async def _mark_unless_ended(self, db: AsyncSession, user: User, status: str) -> bool:
        updated = await self._update_user(
            db,
            user,
            or_(
                User.subscription_status.is_(None),
                User.subscription_status.not_in(FAILURE_IMMUNE_STATUSES),
            ),
            subscription_status=status,
        )
        if not updated:
            logger.info(f"User {user.user_uuid} is {user.subscription_status}, ignoring {status}")
        return updated

    async def subscription_failed(self, db: AsyncSession, event: SubscriptionEvent) -> None:
        user = await self._user_for(db, event.data, event.event_type)
        if user is None:
            return
        if await self._mark_unless_ended(db, user, SubscriptionStatus.FAILED):
            logger.warning(f"Subscription failed for {user.user_uuid}, tier kept until grace handling")

    async def subscription_on_hold(self, db: AsyncSession, event: SubscriptionEvent) -> None:
        user = await self._user_for(db, event.data, event.event_type)
        if user is None:
            return
        if not await self._mark_unless_ended(db, user, SubscriptionStatus.ON_HOLD):
            return
        demoted = await self._update_user(
            db,
            user,
            User.plan_change_status == PlanChangeStatus.PENDING,
            plan_change_status=PlanChangeStatus.PAYMENT_NEEDED,
        )
        if demoted:
            logger.warning(f"Subscription on hold for {user.user_uuid}, plan change marked PAYMENT_NEEDED")

    async def subscription_plan_changed(self, db: AsyncSession, event: SubscriptionEvent) -> None:
        data = event.data
        user = await self._user_for(db, data, event.event_type)
        if user is None:
            return

        identity = self._identity_values(user, data.customer_id, data.subscription_id)
        status = user.plan_change_status

        if status == PlanChangeStatus.PENDING:
            await self._update_user(db, user, **identity)
            logger.info(f"Plan change confirmation for {user.user_uuid}, payment still pending")
            return

        if status == PlanChangeStatus.PAYMENT_NEEDED:
            logger.warning(
                f"Plan change event for {user.user_uuid} while a previous change needs payment, ignoring"
            )
            return

        if status == PlanChangeStatus.COMPLETED and user.pending_product_id == data.product_id:
            logger.info(f"Plan change confirmation for {user.user_uuid}, already recorded")
            return

        tier, length, _ = self._event_tier(data)
        if not tier:
            logger.error(f"Plan change for {user.user_uuid} to unknown product {data.product_id}")
            return

        now = self.clock()
        change_type = determine_change_type(user.active_tier, tier, user.active_length, length)
        if change_type == ChangeType.NO_CHANGE:
            await self._update_user(db, user, **identity)
            logger.info(f"Plan change for {user.user_uuid} is a no-op ({tier}/{length})")
            return

        if change_type == ChangeType.IMMEDIATE_UPGRADE:
            new_status = PlanChangeStatus.PENDING
            effective = now
        else:
            new_status = PlanChangeStatus.COMPLETED
            effective = as_utc(user.tier_expires_at) or data.period_end or now

        recorded = await self._update_user(
            db,
            user,
            User.plan_change_status.is_not_distinct_from(status),
            plan_change_status=new_status,
            pending_tier=tier,
            pending_active_length=length,
            pending_tier_effective_date=effective,
            pending_change_type=change_type,
            pending_product_id=data.product_id,
            plan_change_initiated_at=now,
            **identity,
        )
        if recorded:
            logger.info(f"External plan change for {user.user_uuid}: {change_type} -> {tier}, status {new_status}")
        else:
            logger.warning(f"Plan change for {user.user_uuid} raced with another update, skipped")

    # ── Other events ─────────────────────────────────────────────────────
    async def customer_created(self, db: AsyncSession, event: CustomerEvent) -> None:
        data = event.data
        if not data.email or not data.customer_id:
            logger.error("customer.created without email or customer_id")
            return
        user = await find_user(db, email=data.email)
        if user is None:
            logger.error(f"customer.created: user not found for {data.email}")
            return
        if await self._update_user(db, user, User.dodo_customer_id.is_(None), dodo_customer_id=data.customer_id):
            logger.info(f"Stored customer id {data.customer_id} for {user.user_uuid}")

    async def dispute_opened(self, db: AsyncSession, event: DisputeEvent) -> None:
        data = event.data
        if await get_payment(db, data.payment_id) is not None:
            await set_payment_status(db, data.payment_id, PaymentStatus.DISPUTED, raw_json=event.raw)
            logger.warning(f"Payment {data.payment_id} disputed: {data.dispute_id}, reason: {data.reason}")
            return

        user = await find_user(db, data.user_uuid, data.customer_email)
        if user is None:
            logger.error(f"dispute.opened: no payment {data.payment_id} and no matching user")
            return
        await upsert_payment(
            db,
            data.payment_id,
            user.user_uuid,
            PaymentStatus.DISPUTED,
            amount_cents=_amount_cents(data.amount),
            currency=data.currency,
            raw_json=event.raw,
        )
        logger.warning(f"Created disputed payment record {data.payment_id} for {user.user_uuid}")

    async def refund_succeeded(self, db: AsyncSession, event: RefundEvent) -> None:
        data = event.data
        payment = await get_payment(db, data.payment_id)
        if payment is not None:
            await set_payment_status(db, data.payment_id, PaymentStatus.REFUNDED, raw_json=event.raw)
            if data.is_partial:
                logger.info(f"Partial refund on {data.payment_id}, tier unchanged")
                return
            user = await find_user(db, payment.user_uuid)
            if user is not None:
                await self.revoke(db, user, None, self.clock())
            return

        user = await find_user(db, data.user_uuid, data.customer_email)
        if user is None:
            logger.error(f"refund.succeeded: no payment {data.payment_id} and no matching user")
            return
        amount = _amount_cents(data.amount)
        await upsert_payment(
            db,
            f"refund_{data.refund_id or data.payment_id}",
            user.user_uuid,
            PaymentStatus.REFUNDED,
            amount_cents=-amount if amount else None,
            currency=data.currency,
            raw_json=event.raw,
        )
        logger.info(f"Created refund record for {data.refund_id}")

    async def checkout_expired(self, db: AsyncSession, event: CheckoutEvent) -> None:
        session_id = event.data.session_id
        if not session_id:
            logger.error(f"{event.event_type} without session_id")
            return
        if not await transition_session(db, session_id, SessionStatus.EXPIRED):
            logger.info(f"Session {session_id} not pending or not found")

"""
TierSync - Plan Change Service
API side of the plan-change handshake. Requesting a change never grants the
new tier: upgrades wait for payment.succeeded and the following subscription
event, downgrades and frequency changes wait for the renewal.
"""
import logging
from typing import Any, Dict

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from tiersync.core.errors import ConflictError, ProviderError, ValidationError
from tiersync.core.timeutils import as_utc, isoformat_or_none, utcnow
from tiersync.models.statuses import PlanChangeStatus
from tiersync.models.user import User
from tiersync.services import dodo_payments
from tiersync.services.payment_records import find_open_payment
from tiersync.services.subscription_state import CLEARED_PENDING_CHANGE, NOT_AWAITING_PAYMENT
from tiersync.services.tier_catalog import TierCatalog
from tiersync.services.tier_comparison import (
    DEFERRED_CHANGE_TYPES,
    ChangeType,
    change_type_description,
    determine_change_type,
)
from tiersync.services.users import require_user

logger = logging.getLogger(__name__)

PREVIOUS_PAYMENT_PENDING = "PREVIOUS_PAYMENT_PENDING"

STATUS_MESSAGES = {
    PlanChangeStatus.PENDING: "Plan change is pending payment confirmation.",
    PlanChangeStatus.PAYMENT_NEEDED: (
        "Payment failed or on hold. Please update your payment method to complete the plan change."
    ),
}


def _current_plan(user: User) -> Dict[str, Any]:
    return {"tier": user.active_tier, "active_length": user.active_length}


def _pending_change(user: User) -> Dict[str, Any]:
    return {
        "tier": user.pending_tier,
        "active_length": user.pending_active_length,
        "effective_date": isoformat_or_none(user.pending_tier_effective_date),
        "change_type": user.pending_change_type,
        "product_id": user.pending_product_id,
        "initiated_at": isoformat_or_none(user.plan_change_initiated_at),
    }


def _require_subscription(user: User) -> str:
    if not user.subscription_id:
        raise ValidationError("no_active_subscription", "No active subscription found for this user")
    return user.subscription_id


def _resolve_product(catalog: TierCatalog, product_id: str):
    if not product_id:
        raise ValidationError("product_id_required", "product_id is required")
    config = catalog.resolve(product_id)
    if config is None:
        raise ValidationError("invalid_product", "Invalid product_id - could not determine tier")
    return config


async def plan_change_status(db: AsyncSession, customer_email: str) -> Dict[str, Any]:
    user = await require_user(db, customer_email)

    if user.plan_change_status in STATUS_MESSAGES:
        message = STATUS_MESSAGES[user.plan_change_status]
    elif user.plan_change_status == PlanChangeStatus.COMPLETED and user.has_pending_change:
        message = "Plan change completed. Scheduled change will take effect at the end of billing cycle."
    elif user.has_pending_change:
        message = "There is a scheduled plan change."
    else:
        message = "No pending plan changes."

    return {
        "success": True,
        "plan_change_status": user.plan_change_status,
        "current_plan": {
            **_current_plan(user),
            "expires_at": isoformat_or_none(user.tier_expires_at),
        },
        "pending_change": _pending_change(user) if user.has_pending_change else None,
        "message": message,
    }


async def cancel_pending_change(db: AsyncSession, customer_email: str) -> Dict[str, Any]:
    user = await require_user(db, customer_email)
    if not user.has_pending_change and not user.plan_change_status:
        raise ValidationError(
            "no_pending_change",
            "No pending change to cancel",
            details={"current_tier": user.active_tier},
        )

    cancelled = {**_pending_change(user), "status": user.plan_change_status}
    await db.execute(update(User).where(User.id == user.id).values(**CLEARED_PENDING_CHANGE))
    logger.info(f"Cancelled pending change for user {user.user_uuid}: {cancelled}")

    return {
        "success": True,
        "message": "Pending change cancelled successfully",
        "cancelled_change": cancelled,
        "current_tier": user.active_tier,
        "current_length": user.active_length,
    }


async def preview_change(db: AsyncSession, catalog: TierCatalog, customer_email: str, product_id: str) -> Dict[str, Any]:
    """Read-only: classify the change and ask the provider for proration."""
    user = await require_user(db, customer_email)
    subscription_id = _require_subscription(user)
    config = _resolve_product(catalog, product_id)

    change_type = determine_change_type(user.active_tier, config.code, user.active_length, config.billing_frequency)
    preview = await dodo_payments.preview_change_plan(subscription_id, product_id)
    is_immediate = change_type == ChangeType.IMMEDIATE_UPGRADE

    logger.info(f"Preview change for user {user.user_uuid}: {user.active_tier} -> {config.code}")
    return {
        "success": True,
        "current": {**_current_plan(user), "expires_at": isoformat_or_none(user.tier_expires_at)},
        "proposed": {"tier": config.code, "active_length": config.billing_frequency},
        "change_type": change_type,
        "change_description": change_type_description(change_type),
        "is_immediate": is_immediate,
        "effective_date": utcnow().isoformat() if is_immediate else isoformat_or_none(user.tier_expires_at),
        "proration_details": preview,
    }


async def _previous_payment_pending_response(user: User) -> Dict[str, Any]:
    if user.plan_change_status == PlanChangeStatus.PENDING:
        return {
            "success": True,
            "message": "A plan change is already pending. Your card on file will be charged automatically.",
            "plan_change_status": PlanChangeStatus.PENDING,
            "pending_change": _pending_change(user),
            "current": _current_plan(user),
            "note": "Payment will be processed automatically. Tier will update upon payment confirmation.",
        }
    return {
        "success": True,
        "message": "A payment is being processed. Please wait for automatic payment confirmation.",
        "plan_change_status": "PROCESSING",
        "current": _current_plan(user),
        "note": "Your card on file is being charged. You will receive confirmation once payment completes.",
    }


async def change_plan(db: AsyncSession, catalog: TierCatalog, customer_email: str, product_id: str) -> Dict[str, Any]:
    """
    Initiate a plan change.

    Immediate upgrades are stored as PENDING until payment is confirmed.
    Downgrades and frequency changes need no payment and are stored as
    COMPLETED with an effective date at the end of the current period.
    """
    user = await require_user(db, customer_email)
    subscription_id = _require_subscription(user)

    pending_payment = await find_open_payment(db, user.user_uuid)
    if pending_payment is not None:
        raise ConflictError(
            "pending_payment_exists",
            "Cannot change plan while a payment is pending. Please wait for the current payment to complete.",
            details={
                "pending_payment": {
                    "id": pending_payment.dodo_payment_id,
                    "status": pending_payment.status,
                    "created_at": isoformat_or_none(pending_payment.created_at),
                }
            },
        )

    if user.plan_change_status == PlanChangeStatus.PENDING:
        raise ConflictError(
            "pending_plan_change_exists",
            "A plan change is already in progress. Please wait for it to complete.",
            details={"pending_change": _pending_change(user)},
        )

    config = _resolve_product(catalog, product_id)
    change_type = determine_change_type(user.active_tier, config.code, user.active_length, config.billing_frequency)
    if change_type == ChangeType.NO_CHANGE:
        return {
            "success": True,
            "message": "No plan change needed - you are already on this plan.",
            "plan_change_status": None,
            "current": _current_plan(user),
        }

    logger.info(f"Initiating plan change for user {user.user_uuid}: {user.active_tier} -> {config.code}")
    try:
        await dodo_payments.change_plan(subscription_id, product_id)
    except ProviderError as e:
        if e.status_code == 409 and e.code == PREVIOUS_PAYMENT_PENDING:
            logger.warning(f"Provider reports a previous payment pending for {user.user_uuid}")
            return await _previous_payment_pending_response(user)
        raise

    now = utcnow()
    deferred = change_type in DEFERRED_CHANGE_TYPES
    effective = (as_utc(user.tier_expires_at) or now) if deferred else now
    status = PlanChangeStatus.COMPLETED if deferred else PlanChangeStatus.PENDING

    result = await db.execute(
        update(User)
        .where(User.id == user.id, NOT_AWAITING_PAYMENT)
        .values(
            plan_change_status=status,
            pending_tier=config.code,
            pending_active_length=config.billing_frequency,
            pending_tier_effective_date=effective,
            pending_change_type=change_type,
            pending_product_id=product_id,
            plan_change_initiated_at=now,
        )
    )
    if result.rowcount == 0:
        raise ConflictError(
            "pending_plan_change_exists",
            "A plan change is already in progress. Please wait for it to complete.",
        )
    logger.info(f"Plan change stored as {status} for user {user.user_uuid}")

    return {
        "success": True,
        "message": (
            "Plan change scheduled for the end of the current billing cycle."
            if deferred
            else "Plan change initiated. Waiting for payment confirmation."
        ),
        "plan_change_status": status,
        "subscription_id": subscription_id,
        "change_type": change_type,
        "change_description": change_type_description(change_type),
        "current": _current_plan(user),
        "new": {"tier": config.code, "active_length": config.billing_frequency},
        "effective_date": effective.isoformat(),
        "note": (
            "Change will take effect at end of current billing cycle."
            if deferred
            else "Your card on file will be charged automatically. Tier will update upon payment confirmation."
        ),
    }

"""
TierSync - Checkout Service
Checkout initiation, provider resync and subscription maintenance
(payment retry and cancellation at the next billing date).
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tiersync.core.config import settings
from tiersync.core.errors import ConflictError, NotFoundError, ProviderError, ValidationError
from tiersync.core.timeutils import isoformat_or_none, utcnow
from tiersync.models.checkout_session import CheckoutSession
from tiersync.models.payment import Payment
from tiersync.models.statuses import (
    PaymentStatus,
    PlanChangeStatus,
    SessionStatus,
    SubscriptionStatus,
)
from tiersync.models.user import User
from tiersync.services import dodo_payments
from tiersync.services.payment_records import find_open_payment, upsert_payment
from tiersync.services.session_correlator import (
    create_session,
    find_or_reuse_pending_session,
    find_user,
    get_session,
    map_checkout_status,
    transition_session,
)
from tiersync.services.subscription_state import SubscriptionStateMachine
from tiersync.services.tier_catalog import TierCatalog
from tiersync.services.users import require_user

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.FAILED,
    SubscriptionStatus.EXPIRED,
)
CANCELLABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE)


async def _start_checkout(
    db: AsyncSession,
    user: User,
    product_id: str,
    requested_tier: Optional[str],
    return_url: Optional[str],
) -> Dict[str, Any]:
    metadata = {"user_uuid": user.user_uuid, "customer_email": user.email}
    if requested_tier:
        metadata["requested_tier"] = requested_tier
    if user.dodo_customer_id:
        metadata["dodo_customer_id"] = user.dodo_customer_id

    checkout = await dodo_payments.create_checkout_session(
        product_id,
        return_url or settings.CHECKOUT_RETURN_URL,
        metadata,
        customer_id=user.dodo_customer_id,
        customer_email=user.email,
    )
    session_id = checkout.get("session_id")
    if not session_id:
        raise ProviderError(502, "Payment provider returned no session_id")

    await create_session(db, session_id, user.user_uuid, requested_tier)
    logger.info(f"Created checkout session {session_id} for user {user.user_uuid}")
    return {
        "success": True,
        "session_url": checkout.get("checkout_url"),
        "session_id": session_id,
        "requested_tier": requested_tier,
    }


async def subscribe(
    db: AsyncSession,
    catalog: TierCatalog,
    product_id: str,
    customer_email: str,
    return_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Start a checkout, or hand back the user's still-usable pending one."""
    user = await require_user(db, customer_email, "User not found. Create user first via POST /api/v1/users")

    existing = await find_or_reuse_pending_session(db, user)
    if existing is not None:
        return {
            "success": True,
            "session_url": dodo_payments.checkout_url_for(existing.session_id),
            "session_id": existing.session_id,
            "requested_tier": existing.requested_tier,
            "existing_session": True,
            "message": "Returning existing pending checkout session",
        }

    return await _start_checkout(db, user, product_id, catalog.tier_code_of(product_id), return_url)


async def _apply_checkout(db: AsyncSession, session_id: str, checkout: Dict[str, Any]) -> Dict[str, Any]:
    """Copy provider checkout state onto the local session row."""
    applied: Dict[str, Any] = {}
    ids = {}
    if checkout.get("payment_id"):
        ids["payment_id"] = checkout["payment_id"]
    if checkout.get("subscription_id"):
        ids["subscription_id"] = checkout["subscription_id"]
    if ids:
        await db.execute(update(CheckoutSession).where(CheckoutSession.session_id == session_id).values(**ids))
        applied.update(ids)

    status = map_checkout_status(checkout.get("status"))
    if status != SessionStatus.PENDING:
        values = {"completed_at": utcnow()} if status == SessionStatus.COMPLETED else {}
        if await transition_session(db, session_id, status, **values):
            applied["status"] = status
    return applied


async def refresh_checkout(db: AsyncSession, checkout_id: str) -> Dict[str, Any]:
    """Fetch a checkout from the provider and fold it into the local session."""
    checkout = await dodo_payments.retrieve_checkout_session(checkout_id)
    applied = await _apply_checkout(db, checkout_id, checkout)
    if applied:
        logger.info(f"Updated session {checkout_id}: {applied}")
    return checkout


async def session_detail(db: AsyncSession, session_id: str) -> Dict[str, Any]:
    session = await get_session(db, session_id)
    if session is None:
        raise NotFoundError("session_not_found", "Session not found")

    user = await find_user(db, session.user_uuid)
    result = await db.execute(
        select(Payment)
        .where(Payment.session_id == session_id)
        .order_by(Payment.created_at.desc())
        .limit(1)
    )
    payment = result.scalar_one_or_none()

    return {
        "session_id": session.session_id,
        "status": session.status,
        "mode": session.mode,
        "requested_tier": session.requested_tier,
        "payment_id": session.payment_id,
        "subscription_id": session.subscription_id,
        "created_date": isoformat_or_none(session.created_date),
        "completed_at": isoformat_or_none(session.completed_at),
        "user": {
            "email": user.email,
            "user_uuid": user.user_uuid,
            "active_tier": user.active_tier,
            "tier_expires_at": isoformat_or_none(user.tier_expires_at),
        } if user else None,
        "latest_payment": {
            "payment_id": payment.dodo_payment_id,
            "status": payment.status,
            "amount_cents": payment.amount_cents,
            "currency": payment.currency,
            "tier": payment.tier,
            "paid_at": isoformat_or_none(payment.paid_at),
        } if payment else None,
    }


async def sync_session(
    db: AsyncSession,
    catalog: TierCatalog,
    state_machine: SubscriptionStateMachine,
    session_id: str,
) -> Dict[str, Any]:
    """Manual repair: pull provider truth for a session when webhooks went missing."""
    session = await get_session(db, session_id)
    if session is None:
        raise NotFoundError("session_not_found", "Session not found in database")

    checkout = await dodo_payments.retrieve_checkout_session(session_id)
    results: Dict[str, Any] = {
        "session_updated": False,
        "payment_upserted": False,
        "user_tier_updated": False,
        "details": {},
    }

    applied = await _apply_checkout(db, session_id, checkout)
    if applied:
        results["session_updated"] = True
        results["details"]["session"] = applied

    payment_id = checkout.get("payment_id")
    if payment_id:
        cart = checkout.get("product_cart") or []
        product_id = cart[0].get("product_id") if cart else None
        config = catalog.resolve(product_id)
        tier = config.code if config else session.requested_tier
        completed = map_checkout_status(checkout.get("status")) == SessionStatus.COMPLETED

        await upsert_payment(
            db,
            payment_id,
            session.user_uuid,
            PaymentStatus.COMPLETED if completed else PaymentStatus.PENDING,
            tier=tier,
            dodo_subscription_id=checkout.get("subscription_id"),
            paid_at=utcnow() if completed else None,
            raw_json=checkout,
            session_id=session_id,
        )
        results["payment_upserted"] = True
        results["details"]["payment"] = {"dodo_payment_id": payment_id, "tier": tier}

        if completed and tier:
            user = await find_user(db, session.user_uuid)
            if user is not None:
                granted = await state_machine.grant_tier(
                    db,
                    user,
                    tier,
                    config.billing_frequency if config else None,
                    catalog.expiration_for(config) if config else None,
                )
                results["user_tier_updated"] = granted
                if granted:
                    results["details"]["user_tier"] = tier

    logger.info(f"Synced session {session_id}: {results}")
    return {"success": True, "session_id": session_id, **results}


async def _resolve_subscription_user(
    db: AsyncSession,
    subscription_id: Optional[str],
    customer_email: Optional[str],
) -> Optional[User]:
    if not subscription_id and not customer_email:
        raise ValidationError("identifier_required", "Either subscription_id or customer_email is required")
    if customer_email:
        return await require_user(db, customer_email)
    return None


async def retry_payment(
    db: AsyncSession,
    catalog: TierCatalog,
    subscription_id: Optional[str] = None,
    customer_email: Optional[str] = None,
    return_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Payment method update link for a failed subscription, or a fresh checkout once expired."""
    user = await _resolve_subscription_user(db, subscription_id, customer_email)

    if user is not None:
        status = user.subscription_status
        if status == SubscriptionStatus.CANCELLED:
            raise ValidationError(
                "subscription_cancelled",
                "Your subscription has been cancelled. Please subscribe again to continue using the service.",
                details={"current_status": status, "action_required": "subscribe"},
            )
        if status == SubscriptionStatus.ON_HOLD:
            raise ConflictError(
                "subscription_on_hold",
                "Cannot retry - subscription is on hold. Please wait for the current payment to be processed.",
                details={"current_status": status},
            )

        processing = await find_open_payment(db, user.user_uuid, statuses=(PaymentStatus.PROCESSING,))
        if processing is not None:
            raise ConflictError(
                "payment_processing",
                "Cannot retry - a payment is currently being processed. Please wait for it to complete.",
                details={
                    "current_status": status,
                    "processing_payment": {
                        "id": processing.dodo_payment_id,
                        "created_at": isoformat_or_none(processing.created_at),
                    },
                },
            )

        awaiting_change = user.plan_change_status in (PlanChangeStatus.PENDING, PlanChangeStatus.PAYMENT_NEEDED)
        if status not in RETRYABLE_STATUSES and not awaiting_change:
            raise ValidationError(
                "nothing_to_retry",
                "User does not have an active or failed subscription, nor a pending plan change requiring payment",
                details={"current_status": status, "plan_change_status": user.plan_change_status},
            )

        if status == SubscriptionStatus.EXPIRED:
            return await _resubscribe_expired(db, catalog, user, return_url)

        subscription_id = subscription_id or user.subscription_id

    if not subscription_id:
        raise ValidationError(
            "subscription_id_required",
            "Could not determine subscription_id. Please provide it explicitly.",
        )

    response = await dodo_payments.update_payment_method(
        subscription_id,
        return_url or settings.PAYMENT_UPDATE_RETURN_URL,
    )
    logger.info(f"Generated payment update link for subscription {subscription_id}")
    return {
        "success": True,
        "subscription_id": subscription_id,
        "update_url": (
            response.get("payment_link") or response.get("url")
            or response.get("checkout_url") or response.get("link")
        ),
        "message": "Payment method update link generated. Redirect user to update their payment method.",
    }


async def _resubscribe_expired(
    db: AsyncSession,
    catalog: TierCatalog,
    user: User,
    return_url: Optional[str],
) -> Dict[str, Any]:
    result = await db.execute(
        select(CheckoutSession)
        .where(CheckoutSession.user_uuid == user.user_uuid, CheckoutSession.requested_tier.is_not(None))
        .order_by(CheckoutSession.created_date.desc())
        .limit(1)
    )
    last_session = result.scalar_one_or_none()
    if last_session is None:
        raise ValidationError(
            "no_previous_subscription",
            "Cannot determine product for new subscription. No previous subscription found.",
        )

    product_id = catalog.product_id_for(last_session.requested_tier)
    if not product_id:
        raise ValidationError("product_not_found", "Cannot determine product_id for new subscription")

    response = await _start_checkout(db, user, product_id, last_session.requested_tier, return_url)
    logger.info(f"Created new subscription checkout for expired user {user.user_uuid}")
    response["message"] = "New subscription created for expired user. Redirect user to complete payment."
    return response


async def cancel_subscription(
    db: AsyncSession,
    subscription_id: Optional[str] = None,
    customer_email: Optional[str] = None,
) -> Dict[str, Any]:
    """Cancel at the next billing date; access is kept until then."""
    user = await _resolve_subscription_user(db, subscription_id, customer_email)

    if user is not None:
        if user.subscription_status not in CANCELLABLE_STATUSES:
            raise ValidationError(
                "no_active_subscription",
                "User does not have an active subscription to cancel",
                details={"current_status": user.subscription_status},
            )
        subscription_id = subscription_id or user.subscription_id

    if not subscription_id:
        raise ValidationError(
            "subscription_id_required",
            "Could not determine subscription_id. Please provide it explicitly.",
        )

    response = await dodo_payments.update_subscription(subscription_id, cancel_at_next_billing_date=True)

    if user is None:
        result = await db.execute(select(User).where(User.subscription_id == subscription_id))
        user = result.scalar_one_or_none()
    if user is not None:
        await db.execute(
            update(User).where(User.id == user.id).values(subscription_status=SubscriptionStatus.CANCELLED)
        )

    logger.info(f"Subscription {subscription_id} marked for cancellation at next billing date")
    return {
        "success": True,
        "subscription_id": subscription_id,
        "message": "Subscription will be cancelled at the next billing date. User will retain access until then.",
        "cancellation_details": response,
    }

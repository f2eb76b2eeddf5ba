"""
TierSync - Subscription Routes
Payment retry, cancellation and the plan-change endpoints.
"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tiersync.core.database import get_db
from tiersync.schemas.schemas import (
    CustomerEmailRequest,
    PlanChangeRequest,
    SubscriptionActionRequest,
)
from tiersync.services import checkout, plan_change
from tiersync.services.tier_catalog import TierCatalog, get_tier_catalog

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post(
    "/retry",
    summary="Retry payment",
    description="Payment method update link for a failed subscription; expired users get a new checkout.",
)
async def retry_payment(
    request: SubscriptionActionRequest,
    db: AsyncSession = Depends(get_db),
    catalog: TierCatalog = Depends(get_tier_catalog),
):
    return await checkout.retry_payment(
        db, catalog, request.subscription_id, request.customer_email, request.return_url
    )


@router.post(
    "/cancel",
    summary="Cancel subscription",
    description="Cancel at the next billing date. Access is kept until then.",
)
async def cancel_subscription(request: SubscriptionActionRequest, db: AsyncSession = Depends(get_db)):
    return await checkout.cancel_subscription(db, request.subscription_id, request.customer_email)


@router.get(
    "/plan-change-status",
    summary="Plan change status",
)
async def get_plan_change_status(
    customer_email: str = Query(..., min_length=3),
    db: AsyncSession = Depends(get_db),
):
    return await plan_change.plan_change_status(db, customer_email)


@router.post(
    "/cancel-pending-change",
    summary="Cancel pending change",
    description="Drop a scheduled downgrade or frequency change before it takes effect.",
)
async def cancel_pending_change(request: CustomerEmailRequest, db: AsyncSession = Depends(get_db)):
    return await plan_change.cancel_pending_change(db, request.customer_email)


@router.post(
    "/preview-change",
    summary="Preview plan change",
    description="Classify a plan change and fetch proration details without committing it.",
)
async def preview_change(
    request: PlanChangeRequest,
    db: AsyncSession = Depends(get_db),
    catalog: TierCatalog = Depends(get_tier_catalog),
):
    return await plan_change.preview_change(db, catalog, request.customer_email, request.product_id)


@router.post(
    "/change-plan",
    summary="Change plan",
    description=(
        "Upgrade, downgrade or change billing frequency. The new tier is granted only "
        "after the provider confirms payment."
    ),
)
async def change_plan(
    request: PlanChangeRequest,
    db: AsyncSession = Depends(get_db),
    catalog: TierCatalog = Depends(get_tier_catalog),
):
    return await plan_change.change_plan(db, catalog, request.customer_email, request.product_id)

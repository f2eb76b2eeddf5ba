"""
TierSync - Checkout Routes
Checkout initiation and session lookup/repair. Webhooks remain the primary
source of truth; the refresh and sync endpoints are fallbacks.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tiersync.api.deps import get_state_machine
from tiersync.core.database import get_db
from tiersync.schemas.schemas import SubscribeRequest, SubscribeResponse
from tiersync.services import checkout
from tiersync.services.subscription_state import SubscriptionStateMachine
from tiersync.services.tier_catalog import TierCatalog, get_tier_catalog

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post(
    "/subscribe",
    response_model=SubscribeResponse,
    summary="Start checkout",
    description="Create a hosted checkout, or return the user's pending one if it is still usable.",
)
async def subscribe(
    request: SubscribeRequest,
    db: AsyncSession = Depends(get_db),
    catalog: TierCatalog = Depends(get_tier_catalog),
):
    return await checkout.subscribe(db, catalog, request.product_id, request.customer_email, request.return_url)


@router.get(
    "/checkout/{checkout_id}",
    summary="Refresh checkout",
    description="Fetch a checkout from Dodo Payments and update the local session record.",
)
async def get_checkout(checkout_id: str, db: AsyncSession = Depends(get_db)):
    return await checkout.refresh_checkout(db, checkout_id)


@router.get(
    "/session/{session_id}",
    summary="Get session",
    description="Local session record with its user and latest payment.",
)
async def get_session(session_id: str, db: AsyncSession = Depends(get_db)):
    return await checkout.session_detail(db, session_id)


@router.post(
    "/sync-session/{session_id}",
    summary="Resync session",
    description="Manual repair: pull a session's state from Dodo Payments when webhooks were missed.",
)
async def sync_session(
    session_id: str,
    db: AsyncSession = Depends(get_db),
    catalog: TierCatalog = Depends(get_tier_catalog),
    state_machine: SubscriptionStateMachine = Depends(get_state_machine),
):
    return await checkout.sync_session(db, catalog, state_machine, session_id)

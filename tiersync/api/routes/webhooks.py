"""
TierSync - Dodo Payments Webhook
Provider -> TierSync event ingestion. Once a payload carries an event type
it is always acknowledged with 200, even if processing fails, so the
provider does not retry into an event storm.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tiersync.api.deps import get_dispatcher
from tiersync.core.config import settings
from tiersync.core.database import get_db
from tiersync.schemas.schemas import WebhookAck
from tiersync.services.webhook_auth import verify_webhook_signature
from tiersync.services.webhook_dispatcher import WebhookDispatcher
from tiersync.services.webhook_events import normalize_envelope

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post(
    "/webhook",
    response_model=WebhookAck,
    response_model_exclude_none=True,
    summary="Dodo Payments webhook",
    description="Standard Webhooks signed event delivery from Dodo Payments.",
)
async def dodo_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    body = await request.body()
    webhook_id = request.headers.get("webhook-id")

    warning = None
    verified = verify_webhook_signature(
        body,
        webhook_id,
        request.headers.get("webhook-timestamp"),
        request.headers.get("webhook-signature"),
        settings.DODO_PAYMENTS_WEBHOOK_KEY,
    )
    if not verified:
        if settings.webhook_signature_enforced:
            logger.warning(f"Rejecting webhook {webhook_id}: invalid signature")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
        warning = "Signature verification failed"
        logger.warning(f"Webhook {webhook_id} failed signature verification, processing anyway")

    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning(f"Webhook {webhook_id} body is not valid JSON")
        return WebhookAck(warning=warning, error="Invalid JSON payload")

    normalized = normalize_envelope(payload)
    if normalized is None:
        keys = list(payload.keys()) if isinstance(payload, dict) else type(payload).__name__
        logger.warning(f"No event type found in webhook payload, available keys: {keys}")
        return WebhookAck(warning=warning, error="No event type found")

    try:
        await dispatcher.dispatch(db, normalized, raw=payload)
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception(f"Error processing webhook {normalized.event_type} ({webhook_id})")
        return WebhookAck(warning=warning, error="Processing error")

    return WebhookAck(warning=warning)

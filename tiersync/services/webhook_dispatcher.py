"""
TierSync - Webhook Dispatcher
Routes a parsed webhook event to exactly one state machine handler.
"""
import logging
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from tiersync.services.subscription_state import SubscriptionStateMachine
from tiersync.services.webhook_events import (
    NormalizedEvent,
    UnrecognizedEvent,
    WebhookEvent,
    parse_event,
)

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, WebhookEvent], Awaitable[None]]


class WebhookDispatcher:
    def __init__(self, state_machine: SubscriptionStateMachine):
        sm = state_machine
        self._handlers: Dict[str, Handler] = {
            "payment.succeeded": sm.payment_succeeded,
            "payment.failed": sm.payment_failed,
            "payment.processing": sm.payment_processing,
            "payment.cancelled": sm.payment_cancelled,
            "subscription.created": sm.subscription_created,
            "subscription.active": sm.subscription_active,
            "subscription.updated": sm.subscription_updated,
            "subscription.renewed": sm.subscription_renewed,
            "subscription.cancelled": sm.subscription_cancelled,
            "subscription.canceled": sm.subscription_cancelled,
            "subscription.expired": sm.subscription_expired,
            "subscription.failed": sm.subscription_failed,
            "subscription.on_hold": sm.subscription_on_hold,
            "subscription.plan_changed": sm.subscription_plan_changed,
            "customer.created": sm.customer_created,
            "dispute.opened": sm.dispute_opened,
            "refund.succeeded": sm.refund_succeeded,
            "checkout.expired": sm.checkout_expired,
            "session.expired": sm.checkout_expired,
        }

    def handler_for(self, event_type: str) -> Optional[Handler]:
        return self._handlers.get(event_type)

    @property
    def event_types(self):
        return sorted(self._handlers)

    async def dispatch(self, db: AsyncSession, normalized: NormalizedEvent, raw: Optional[dict] = None) -> bool:
        """
        Parse and handle one event. Returns False for event types with no
        handler; those are logged and acknowledged. Malformed payloads raise
        pydantic.ValidationError.
        """
        event = parse_event(normalized, raw)
        handler = self.handler_for(event.event_type)
        if handler is None or isinstance(event, UnrecognizedEvent):
            logger.info(f"Unhandled webhook event: {event.event_type}")
            return False

        logger.info(f"Processing webhook event: {event.event_type}")
        await handler(db, event)
        return True

"""
TierSync - Webhook Events
Normalizes provider envelopes into (event_type, data) and parses them into a
closed set of typed events. Unknown event types become UnrecognizedEvent.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


# ── Payload shapes ───────────────────────────────────────────────────────────
class _Payload(BaseModel):
    class Config:
        extra = "allow"


class CustomerRef(_Payload):
    customer_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class ProductCartItem(_Payload):
    product_id: str
    quantity: int = 1


class _CustomerPayload(_Payload):
    customer: Optional[CustomerRef] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def metadata_or_empty(cls, value):
        return value or {}

    @property
    def user_uuid(self) -> Optional[str]:
        return self.metadata.get("user_uuid")

    @property
    def customer_email(self) -> Optional[str]:
        return self.metadata.get("customer_email") or (self.customer.email if self.customer else None)

    @property
    def customer_id(self) -> Optional[str]:
        return self.customer.customer_id if self.customer else None


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PaymentData(_CustomerPayload):
    payment_id: str
    subscription_id: Optional[str] = None
    status: Optional[str] = None
    total_amount: Optional[int] = None
    currency: Optional[str] = None
    payment_link: Optional[str] = None
    product_cart: Optional[List[ProductCartItem]] = None

    @property
    def first_product_id(self) -> Optional[str]:
        if self.product_cart:
            return self.product_cart[0].product_id
        return None


class SubscriptionData(_CustomerPayload):
    subscription_id: str
    product_id: Optional[str] = None
    status: Optional[str] = None
    next_billing_date: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    payment_frequency_interval: Optional[str] = None

    @field_validator("next_billing_date", "current_period_end", "expires_at", "cancelled_at")
    @classmethod
    def to_utc(cls, value):
        return _utc(value)

    @property
    def period_end(self) -> Optional[datetime]:
        """End of the current billing period, not the final subscription end."""
        return self.next_billing_date or self.current_period_end


class CustomerData(_Payload):
    customer_id: Optional[str] = None
    email: Optional[str] = None


class DisputeData(_CustomerPayload):
    payment_id: str
    dispute_id: Optional[str] = None
    amount: Optional[Union[int, str]] = None
    currency: Optional[str] = None
    reason: Optional[str] = None


class RefundData(_CustomerPayload):
    payment_id: str
    refund_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    is_partial: bool = False


class CheckoutData(_Payload):
    session_id: Optional[str] = None


# ── Events ───────────────────────────────────────────────────────────────────
class NormalizedEvent(BaseModel):
    event_type: str
    data: Dict[str, Any]


class WebhookEvent(BaseModel):
    event_type: str
    raw: Dict[str, Any] = Field(default_factory=dict)


class PaymentEvent(WebhookEvent):
    data: PaymentData


class SubscriptionEvent(WebhookEvent):
    data: SubscriptionData


class CustomerEvent(WebhookEvent):
    data: CustomerData


class DisputeEvent(WebhookEvent):
    data: DisputeData


class RefundEvent(WebhookEvent):
    data: RefundData


class CheckoutEvent(WebhookEvent):
    data: CheckoutData


class UnrecognizedEvent(WebhookEvent):
    data: Dict[str, Any] = Field(default_factory=dict)


EVENT_MODELS: Dict[str, Type[WebhookEvent]] = {
    "payment.succeeded": PaymentEvent,
    "payment.failed": PaymentEvent,
    "payment.processing": PaymentEvent,
    "payment.cancelled": PaymentEvent,
    "subscription.created": SubscriptionEvent,
    "subscription.active": SubscriptionEvent,
    "subscription.updated": SubscriptionEvent,
    "subscription.renewed": SubscriptionEvent,
    "subscription.cancelled": SubscriptionEvent,
    "subscription.canceled": SubscriptionEvent,
    "subscription.expired": SubscriptionEvent,
    "subscription.failed": SubscriptionEvent,
    "subscription.on_hold": SubscriptionEvent,
    "subscription.plan_changed": SubscriptionEvent,
    "customer.created": CustomerEvent,
    "dispute.opened": DisputeEvent,
    "refund.succeeded": RefundEvent,
    "checkout.expired": CheckoutEvent,
    "session.expired": CheckoutEvent,
}


def normalize_envelope(body: Any) -> Optional[NormalizedEvent]:
    """
    Extract the event type from `event_type` or the legacy `event`/`type`
    fields. Payloads without a `data` object are treated as the data itself.
    Returns None when no event type is present.
    """
    if not isinstance(body, dict):
        return None

    event_type = body.get("event_type") or body.get("event") or body.get("type")
    if not event_type or not isinstance(event_type, str):
        return None

    data = body.get("data")
    if not isinstance(data, dict):
        data = body
    return NormalizedEvent(event_type=event_type, data=data)


def parse_event(normalized: NormalizedEvent, raw: Optional[Dict[str, Any]] = None) -> WebhookEvent:
    """Build the typed event; raises pydantic.ValidationError on malformed data."""
    model = EVENT_MODELS.get(normalized.event_type, UnrecognizedEvent)
    return model(
        event_type=normalized.event_type,
        data=normalized.data,
        raw=raw if raw is not None else normalized.model_dump(),
    )

"""
TierSync - Pydantic Schemas
Request/response models for the user, checkout, subscription and admin routes.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# ── Users ────────────────────────────────────────────────────────────────────
class UserEnsureRequest(BaseModel):
    email: str = Field(min_length=3, description="User email address")
    user_uuid: Optional[str] = Field(default=None, description="Caller-supplied stable identifier")


class UserResponse(BaseModel):
    user_uuid: str
    email: str
    dodo_customer_id: Optional[str] = None
    active_tier: Optional[str] = None
    active_length: Optional[str] = None
    tier_expires_at: Optional[datetime] = None
    subscription_status: Optional[str] = None
    subscription_id: Optional[str] = None
    plan_change_status: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UserEnsureResponse(BaseModel):
    created: bool
    user: UserResponse


# ── Checkout ─────────────────────────────────────────────────────────────────
class SubscribeRequest(BaseModel):
    product_id: str = Field(min_length=1, description="Dodo Payments product id")
    customer_email: str = Field(min_length=3)
    return_url: Optional[str] = None


class SubscribeResponse(BaseModel):
    success: bool = True
    session_url: Optional[str] = None
    session_id: str
    requested_tier: Optional[str] = None
    existing_session: bool = False
    message: Optional[str] = None


# ── Subscription ─────────────────────────────────────────────────────────────
class SubscriptionActionRequest(BaseModel):
    subscription_id: Optional[str] = None
    customer_email: Optional[str] = None
    return_url: Optional[str] = None


class CustomerEmailRequest(BaseModel):
    customer_email: str = Field(min_length=3)


class PlanChangeRequest(BaseModel):
    customer_email: str = Field(min_length=3)
    product_id: str = Field(min_length=1)


# ── Webhooks ─────────────────────────────────────────────────────────────────
class WebhookAck(BaseModel):
    received: bool = True
    warning: Optional[str] = None
    error: Optional[str] = None


# ── Admin / Health ───────────────────────────────────────────────────────────
class CronStatusResponse(BaseModel):
    running: bool
    pending_sessions: int
    grace_period_users: int
    expired_users: int
    last_run_at: Optional[datetime] = None
    last_result: Optional[Dict[str, Any]] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    provider_mode: str
    reconciliation_running: bool

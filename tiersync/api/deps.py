"""
TierSync - Route Dependencies
"""
from fastapi import Depends, Request

from tiersync.services.tier_catalog import TierCatalog, get_tier_catalog
from tiersync.services.subscription_state import SubscriptionStateMachine
from tiersync.services.webhook_dispatcher import WebhookDispatcher


def get_state_machine(catalog: TierCatalog = Depends(get_tier_catalog)) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(catalog)


def get_dispatcher(state_machine: SubscriptionStateMachine = Depends(get_state_machine)) -> WebhookDispatcher:
    return WebhookDispatcher(state_machine)


def get_reconciliation_job(request: Request):
    """The job built in the lifespan hook, or None when it is disabled."""
    return getattr(request.app.state, "reconciliation_job", None)

"""
TierSync - Dodo Payments Client
Thin async REST client for checkout sessions and subscription plan changes.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from tiersync.core.config import settings
from tiersync.core.errors import ProviderError

logger = logging.getLogger(__name__)


def get_provider_mode() -> str:
    """Return the current provider environment."""
    return settings.DODO_PAYMENTS_ENVIRONMENT


def _headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {settings.DODO_PAYMENTS_API_KEY}",
        "Content-Type": "application/json",
        "User-Agent": f"{settings.APP_NAME}/{settings.APP_VERSION}",
    }


def _error_from_response(response: httpx.Response) -> ProviderError:
    code = None
    message = response.text or response.reason_phrase
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("message") or message
        else:
            code = body.get("code") or (error if isinstance(error, str) else None)
            message = body.get("message") or message
    return ProviderError(response.status_code, message, code=code)


async def _request(method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    url = f"{settings.dodo_api_base_url}{path}"
    try:
        async with httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS) as client:
            response = await client.request(method, url, json=json, headers=_headers())
    except httpx.HTTPError as e:
        logger.error(f"Dodo Payments request {method} {path} failed: {e}")
        raise ProviderError(502, f"Payment provider unreachable: {e}") from e

    if response.status_code >= 300:
        error = _error_from_response(response)
        logger.error(f"Dodo Payments {method} {path} returned {response.status_code}: {error.message}")
        raise error

    if not response.content:
        return {}
    return response.json()


async def create_checkout_session(
    product_id: str,
    return_url: str,
    metadata: Dict[str, str],
    customer_id: Optional[str] = None,
    customer_email: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a hosted checkout. Returns at least session_id and checkout_url."""
    customer: Dict[str, str] = {}
    if customer_id:
        customer["customer_id"] = customer_id
    elif customer_email:
        customer["email"] = customer_email

    payload = {
        "product_cart": [{"product_id": product_id, "quantity": 1}],
        "return_url": return_url,
        "customer": customer,
        "metadata": metadata,
    }
    return await _request("POST", "/checkouts", json=payload)


async def retrieve_checkout_session(session_id: str) -> Dict[str, Any]:
    return await _request("GET", f"/checkouts/{session_id}")


async def change_plan(subscription_id: str, product_id: str) -> Dict[str, Any]:
    """Charge the difference immediately against the card on file."""
    payload = {
        "product_id": product_id,
        "proration_billing_mode": "difference_immediately",
        "quantity": 1,
    }
    return await _request("POST", f"/subscriptions/{subscription_id}/change-plan", json=payload)


async def preview_change_plan(subscription_id: str, product_id: str) -> Dict[str, Any]:
    payload = {
        "product_id": product_id,
        "proration_billing_mode": "prorated_immediately",
        "quantity": 1,
    }
    return await _request("POST", f"/subscriptions/{subscription_id}/change-plan/preview", json=payload)


async def update_subscription(subscription_id: str, **fields: Any) -> Dict[str, Any]:
    return await _request("PATCH", f"/subscriptions/{subscription_id}", json=fields)


async def update_payment_method(subscription_id: str, return_url: str) -> Dict[str, Any]:
    payload = {"type": "new", "return_url": return_url}
    return await _request("POST", f"/subscriptions/{subscription_id}/update-payment-method", json=payload)


def checkout_url_for(session_id: str) -> str:
    """Rebuild the hosted checkout URL for a session created earlier."""
    return f"{settings.DODO_CHECKOUT_BASE_URL.rstrip('/')}/session/{session_id}"

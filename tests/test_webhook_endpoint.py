import base64
import json

import pytest

from tiersync.core.config import settings
from tiersync.models.checkout_session import CheckoutSession
from tiersync.models.payment import Payment
from tiersync.services.session_correlator import create_session
from tiersync.services.webhook_auth import sign_payload

WEBHOOK_URL = "/api/v1/dodopayments/webhook"
SECRET = "whsec_" + base64.b64encode(b"endpoint-test-secret").decode()


def _payment_body(user, payment_id="pay_1"):
    return json.dumps({
        "business_id": "bus_test",
        "type": "payment.succeeded",
        "timestamp": "2026-01-01T00:00:00Z",
        "data": {
            "payment_id": payment_id,
            "total_amount": 2900,
            "currency": "USD",
            "metadata": {"user_uuid": user.user_uuid},
            "customer": {"customer_id": "cus_1", "email": user.email},
        },
    }).encode()


def _signed_headers(body, secret=SECRET, webhook_id="msg_1", timestamp="1767225600"):
    return {
        "webhook-id": webhook_id,
        "webhook-timestamp": timestamp,
        "webhook-signature": sign_payload(secret, webhook_id, timestamp, body),
        "content-type": "application/json",
    }


@pytest.fixture
def webhook_key(monkeypatch):
    monkeypatch.setattr(settings, "DODO_PAYMENTS_WEBHOOK_KEY", SECRET)


@pytest.fixture
def enforced(monkeypatch, webhook_key):
    monkeypatch.setattr(settings, "WEBHOOK_SIGNATURE_ENFORCED", True)


@pytest.fixture
def warn_only(monkeypatch, webhook_key):
    monkeypatch.setattr(settings, "WEBHOOK_SIGNATURE_ENFORCED", False)


async def test_signed_event_is_processed(client, enforced, make_user, reload):
    user = await make_user()
    body = _payment_body(user)

    response = await client.post(WEBHOOK_URL, content=body, headers=_signed_headers(body))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    payment = await reload(Payment, Payment.dodo_payment_id == "pay_1")
    assert payment.status == "COMPLETED"
    assert payment.raw_json["type"] == "payment.succeeded"


async def test_bad_signature_rejected_when_enforced(client, enforced, make_user, reload):
    user = await make_user()
    body = _payment_body(user)
    headers = _signed_headers(body, secret="whsec_" + base64.b64encode(b"some-other-secret").decode())

    response = await client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 401
    assert await reload(Payment, Payment.dodo_payment_id == "pay_1") is None


async def test_missing_headers_rejected_when_enforced(client, enforced, make_user):
    user = await make_user()
    response = await client.post(WEBHOOK_URL, content=_payment_body(user))
    assert response.status_code == 401


async def test_bad_signature_processed_with_warning_when_not_enforced(client, warn_only, make_user, reload):
    user = await make_user()
    body = _payment_body(user)
    headers = _signed_headers(body)
    headers["webhook-signature"] = "v1,bm9wZQ=="

    response = await client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"received": True, "warning": "Signature verification failed"}
    assert (await reload(Payment, Payment.dodo_payment_id == "pay_1")).status == "COMPLETED"


@pytest.mark.parametrize("environment, status_code", [("development", 200), ("production", 401)])
async def test_bad_signature_policy_follows_environment_by_default(
    client, monkeypatch, webhook_key, make_user, reload, environment, status_code
):
    monkeypatch.setattr(settings, "ENVIRONMENT", environment)
    monkeypatch.setattr(settings, "WEBHOOK_SIGNATURE_ENFORCED", None)
    user = await make_user()
    body = _payment_body(user)
    headers = _signed_headers(body)
    headers["webhook-signature"] = "v1,bm9wZQ=="

    response = await client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == status_code
    payment = await reload(Payment, Payment.dodo_payment_id == "pay_1")
    if status_code == 200:
        assert response.json() == {"received": True, "warning": "Signature verification failed"}
        assert payment.status == "COMPLETED"
    else:
        assert payment is None


async def test_unset_key_accepts_unsigned_events(client, make_user, reload):
    user = await make_user()
    response = await client.post(WEBHOOK_URL, content=_payment_body(user))
    assert response.status_code == 200
    assert await reload(Payment, Payment.dodo_payment_id == "pay_1") is not None


async def test_invalid_json_is_acknowledged(client):
    response = await client.post(WEBHOOK_URL, content=b"{not json")
    assert response.status_code == 200
    assert response.json() == {"received": True, "error": "Invalid JSON payload"}


async def test_missing_event_type_is_acknowledged(client):
    response = await client.post(WEBHOOK_URL, json={"data": {"payment_id": "pay_1"}})
    assert response.status_code == 200
    assert response.json() == {"received": True, "error": "No event type found"}


async def test_unknown_event_type_is_acknowledged(client):
    response = await client.post(WEBHOOK_URL, json={"type": "invoice.created", "data": {}})
    assert response.status_code == 200
    assert response.json() == {"received": True}


async def test_processing_error_is_acknowledged(client):
    response = await client.post(WEBHOOK_URL, json={"type": "payment.succeeded", "data": {"total_amount": 5}})
    assert response.status_code == 200
    assert response.json() == {"received": True, "error": "Processing error"}


async def test_legacy_envelope_without_data(client, db, make_user, reload):
    user = await make_user()
    await create_session(db, "cks_1", user.user_uuid, "PRO")
    await db.commit()

    response = await client.post(WEBHOOK_URL, json={"event": "checkout.expired", "session_id": "cks_1"})

    assert response.status_code == 200
    session = await reload(CheckoutSession, CheckoutSession.session_id == "cks_1")
    assert session.status == "EXPIRED"

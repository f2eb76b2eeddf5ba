from datetime import timedelta

import pytest

from tiersync.core.errors import ProviderError
from tiersync.core.timeutils import as_utc, utcnow
from tiersync.models.user import User
from tiersync.services.payment_records import upsert_payment

BASE = "/api/v1/dodopayments/subscription"


@pytest.fixture
async def subscriber(make_user):
    return await make_user(
        active_tier="BASIC",
        active_length="MONTHLY",
        subscription_status="ACTIVE",
        subscription_id="sub_1",
        tier_expires_at=utcnow() + timedelta(days=20),
    )


async def _user(reload, user):
    return await reload(User, User.id == user.id)


async def test_upgrade_is_stored_as_pending(client, subscriber, provider, reload):
    response = await client.post(
        f"{BASE}/change-plan", json={"customer_email": subscriber.email, "product_id": "pdt_pro_monthly"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["plan_change_status"] == "PENDING"
    assert body["change_type"] == "IMMEDIATE_UPGRADE"
    assert body["new"] == {"tier": "PRO", "active_length": "MONTHLY"}
    provider.change_plan.assert_awaited_once_with("sub_1", "pdt_pro_monthly")

    user = await _user(reload, subscriber)
    assert user.active_tier == "BASIC"
    assert user.pending_tier == "PRO"
    assert user.pending_product_id == "pdt_pro_monthly"


async def test_second_change_while_pending_conflicts(client, subscriber, provider):
    payload = {"customer_email": subscriber.email, "product_id": "pdt_pro_monthly"}
    await client.post(f"{BASE}/change-plan", json=payload)

    response = await client.post(f"{BASE}/change-plan", json={**payload, "product_id": "pdt_business_monthly"})

    assert response.status_code == 409
    assert response.json()["error"] == "pending_plan_change_exists"
    assert provider.change_plan.await_count == 1


async def test_open_payment_blocks_plan_change(client, db, subscriber, provider):
    await upsert_payment(db, "pay_open", subscriber.user_uuid, "PROCESSING")
    await db.commit()

    response = await client.post(
        f"{BASE}/change-plan", json={"customer_email": subscriber.email, "product_id": "pdt_pro_monthly"}
    )

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "pending_payment_exists"
    assert body["pending_payment"]["id"] == "pay_open"
    provider.change_plan.assert_not_awaited()


async def test_downgrade_is_scheduled_for_period_end(client, make_user, provider, reload):
    expires = utcnow() + timedelta(days=9)
    user = await make_user(
        active_tier="PRO", active_length="MONTHLY", subscription_id="sub_2", tier_expires_at=expires
    )

    response = await client.post(
        f"{BASE}/change-plan", json={"customer_email": user.email, "product_id": "pdt_basic_monthly"}
    )

    assert response.status_code == 200
    assert response.json()["plan_change_status"] == "COMPLETED"
    row = await _user(reload, user)
    assert row.active_tier == "PRO"
    assert as_utc(row.pending_tier_effective_date) == expires


async def test_frequency_change_is_deferred(client, subscriber, provider):
    response = await client.post(
        f"{BASE}/change-plan", json={"customer_email": subscriber.email, "product_id": "pdt_basic_yearly"}
    )
    assert response.json()["change_type"] == "DEFERRED_FREQUENCY_CHANGE"
    assert response.json()["plan_change_status"] == "COMPLETED"


async def test_same_plan_is_a_no_op(client, subscriber, provider):
    response = await client.post(
        f"{BASE}/change-plan", json={"customer_email": subscriber.email, "product_id": "pdt_basic_monthly"}
    )
    assert response.status_code == 200
    assert response.json()["plan_change_status"] is None
    provider.change_plan.assert_not_awaited()


async def test_provider_previous_payment_pending(client, subscriber, provider, reload):
    provider.change_plan.side_effect = ProviderError(409, "Previous payment pending", "PREVIOUS_PAYMENT_PENDING")

    response = await client.post(
        f"{BASE}/change-plan", json={"customer_email": subscriber.email, "product_id": "pdt_pro_monthly"}
    )

    assert response.status_code == 200
    assert response.json()["plan_change_status"] == "PROCESSING"
    assert (await _user(reload, subscriber)).pending_tier is None


async def test_other_provider_errors_surface_as_bad_gateway(client, subscriber, provider):
    provider.change_plan.side_effect = ProviderError(422, "Invalid product", "INVALID_REQUEST")

    response = await client.post(
        f"{BASE}/change-plan", json={"customer_email": subscriber.email, "product_id": "pdt_pro_monthly"}
    )

    assert response.status_code == 502
    assert response.json()["error"] == "provider_error"
    assert response.json()["provider_status"] == 422


@pytest.mark.parametrize(
    "payload, status, error",
    [
        ({"customer_email": "nobody@example.com", "product_id": "pdt_pro_monthly"}, 404, "user_not_found"),
        ({"customer_email": "{email}", "product_id": "pdt_unknown"}, 400, "invalid_product"),
        ({"customer_email": "{email}"}, 400, "validation_error"),
    ],
)
async def test_change_plan_rejections(client, subscriber, provider, payload, status, error):
    payload = {k: v.format(email=subscriber.email) for k, v in payload.items()}
    response = await client.post(f"{BASE}/change-plan", json=payload)
    assert response.status_code == status
    assert response.json()["error"] == error


async def test_change_plan_requires_subscription(client, make_user, provider):
    user = await make_user(active_tier="BASIC")
    response = await client.post(
        f"{BASE}/change-plan", json={"customer_email": user.email, "product_id": "pdt_pro_monthly"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "no_active_subscription"


async def test_plan_change_status(client, subscriber, provider):
    response = await client.get(f"{BASE}/plan-change-status", params={"customer_email": subscriber.email})
    assert response.json()["pending_change"] is None
    assert response.json()["message"] == "No pending plan changes."

    await client.post(
        f"{BASE}/change-plan", json={"customer_email": subscriber.email, "product_id": "pdt_pro_monthly"}
    )
    response = await client.get(f"{BASE}/plan-change-status", params={"customer_email": subscriber.email})

    body = response.json()
    assert body["plan_change_status"] == "PENDING"
    assert body["current_plan"]["tier"] == "BASIC"
    assert body["pending_change"]["tier"] == "PRO"


async def test_cancel_pending_change(client, subscriber, provider, reload):
    await client.post(
        f"{BASE}/change-plan", json={"customer_email": subscriber.email, "product_id": "pdt_basic_yearly"}
    )

    response = await client.post(f"{BASE}/cancel-pending-change", json={"customer_email": subscriber.email})

    assert response.status_code == 200
    assert response.json()["cancelled_change"]["tier"] == "BASIC"
    row = await _user(reload, subscriber)
    assert row.pending_tier is None
    assert row.plan_change_status is None


async def test_cancel_without_pending_change(client, subscriber):
    response = await client.post(f"{BASE}/cancel-pending-change", json={"customer_email": subscriber.email})
    assert response.status_code == 400
    assert response.json()["error"] == "no_pending_change"


async def test_preview_change(client, subscriber, provider, reload):
    response = await client.post(
        f"{BASE}/preview-change", json={"customer_email": subscriber.email, "product_id": "pdt_pro_monthly"}
    )

    body = response.json()
    assert body["change_type"] == "IMMEDIATE_UPGRADE"
    assert body["is_immediate"] is True
    assert body["proration_details"] == {"immediate_charge": {"summary": {"total_amount": 1500}}}
    provider.preview_change_plan.assert_awaited_once_with("sub_1", "pdt_pro_monthly")
    provider.change_plan.assert_not_awaited()
    assert (await _user(reload, subscriber)).pending_tier is None


async def test_scheduled_downgrade_is_reported_as_pending_change(client, make_user, provider):
    user = await make_user(
        active_tier="PRO", active_length="MONTHLY", subscription_id="sub_2", tier_expires_at=utcnow() + timedelta(days=9)
    )
    changed = await client.post(
        f"{BASE}/change-plan", json={"customer_email": user.email, "product_id": "pdt_basic_monthly"}
    )
    assert changed.json()["message"] == "Plan change scheduled for the end of the current billing cycle."

    response = await client.get(f"{BASE}/plan-change-status", params={"customer_email": user.email})

    body = response.json()
    assert body["plan_change_status"] == "COMPLETED"
    assert body["pending_change"]["tier"] == "BASIC"
    assert body["message"].startswith("Plan change completed.")

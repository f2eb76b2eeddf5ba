import asyncio
from datetime import timedelta

import pytest

from tiersync.core.timeutils import as_utc, utcnow
from tiersync.models.checkout_session import CheckoutSession
from tiersync.models.user import User
from tiersync.services.reconciliation import (
    ReconciliationConfig,
    ReconciliationJob,
    advance_expired_users,
    collect_status_counts,
    expire_stale_sessions,
)
from tiersync.services.session_correlator import create_session


@pytest.fixture
def job(session_factory, state_machine):
    job = ReconciliationJob(session_factory, state_machine, ReconciliationConfig(cleanup_interval_minutes=60))
    yield job
    job.stop()


async def _user(reload, user):
    return await reload(User, User.id == user.id)


async def test_lapsed_users_move_to_grace_then_expired(db, make_user, reload):
    now = utcnow()
    in_grace = await make_user(active_tier="PRO", subscription_status="FAILED", tier_expires_at=now - timedelta(days=6))
    past_grace = await make_user(active_tier="PRO", subscription_status="GRACE", tier_expires_at=now - timedelta(days=8))
    no_status = await make_user(active_tier="PRO", tier_expires_at=now - timedelta(days=1))
    active = await make_user(active_tier="PRO", subscription_status="ACTIVE", tier_expires_at=now - timedelta(days=8))
    current = await make_user(active_tier="PRO", subscription_status="FAILED", tier_expires_at=now + timedelta(days=1))

    counts = await advance_expired_users(db, now, grace_period_days=7)
    await db.commit()

    assert counts == {"grace": 2, "expired": 1}
    assert (await _user(reload, in_grace)).subscription_status == "GRACE"
    assert (await _user(reload, past_grace)).subscription_status == "EXPIRED"
    assert (await _user(reload, no_status)).subscription_status == "GRACE"
    assert (await _user(reload, active)).subscription_status == "ACTIVE"
    assert (await _user(reload, current)).subscription_status == "FAILED"


async def test_grace_sweep_is_idempotent(db, make_user):
    now = utcnow()
    await make_user(active_tier="PRO", subscription_status="FAILED", tier_expires_at=now - timedelta(days=2))
    await make_user(active_tier="PRO", subscription_status="FAILED", tier_expires_at=now - timedelta(days=9))

    assert await advance_expired_users(db, now, 7) == {"grace": 1, "expired": 1}
    await db.commit()
    assert await advance_expired_users(db, now, 7) == {"grace": 0, "expired": 0}


async def test_stale_pending_sessions_expire(db, make_user, reload):
    user = await make_user()
    stale = await create_session(db, "cks_stale", user.user_uuid, "PRO")
    stale.created_date = utcnow() - timedelta(minutes=31)
    await create_session(db, "cks_recent", user.user_uuid, "PRO")
    await db.commit()

    assert await expire_stale_sessions(db, utcnow(), timeout_minutes=30) == 1
    await db.commit()

    assert (await reload(CheckoutSession, CheckoutSession.session_id == "cks_stale")).status == "EXPIRED"
    assert (await reload(CheckoutSession, CheckoutSession.session_id == "cks_recent")).status == "PENDING"


async def test_status_counts(db, make_user):
    user = await make_user(subscription_status="GRACE")
    await make_user(subscription_status="EXPIRED")
    await make_user(subscription_status="EXPIRED")
    await create_session(db, "cks_1", user.user_uuid, None)
    await db.commit()

    assert await collect_status_counts(db) == {
        "pending_sessions": 1,
        "grace_period_users": 1,
        "expired_users": 2,
    }


async def test_run_once_applies_due_plan_changes(job, make_user, reload):
    now = utcnow()
    due = await make_user(
        active_tier="PRO",
        active_length="MONTHLY",
        subscription_status="ACTIVE",
        tier_expires_at=now - timedelta(hours=1),
        plan_change_status="COMPLETED",
        pending_tier="BASIC",
        pending_active_length="MONTHLY",
        pending_product_id="pdt_basic_monthly",
        pending_tier_effective_date=now - timedelta(hours=1),
    )
    awaiting_payment = await make_user(
        active_tier="BASIC",
        subscription_status="ACTIVE",
        tier_expires_at=now + timedelta(days=5),
        plan_change_status="PENDING",
        pending_tier="PRO",
        pending_tier_effective_date=now - timedelta(hours=1),
    )
    not_due = await make_user(
        active_tier="PRO",
        subscription_status="ACTIVE",
        tier_expires_at=now + timedelta(days=5),
        plan_change_status="COMPLETED",
        pending_tier="BASIC",
        pending_tier_effective_date=now + timedelta(days=5),
    )

    result = await job.run_once(now)

    assert result["applied_plan_changes"] == 1
    assert job.last_run_at == now
    assert job.last_result == result

    row = await _user(reload, due)
    assert row.active_tier == "BASIC"
    assert row.pending_tier is None
    assert row.plan_change_status is None
    assert as_utc(row.tier_expires_at) > now

    assert (await _user(reload, awaiting_payment)).active_tier == "BASIC"
    assert (await _user(reload, awaiting_payment)).pending_tier == "PRO"
    assert (await _user(reload, not_due)).active_tier == "PRO"


async def test_run_once_sweeps_sessions_and_users(job, db, make_user):
    now = utcnow()
    user = await make_user(active_tier="PRO", subscription_status="FAILED", tier_expires_at=now - timedelta(days=1))
    session = await create_session(db, "cks_1", user.user_uuid, "PRO")
    session.created_date = now - timedelta(hours=1)
    await db.commit()

    result = await job.run_once(now)

    assert result["expired_sessions"] == 1
    assert result["users"] == {"grace": 1, "expired": 0}


async def test_start_runs_immediately_and_stop_prevents_reruns(job, make_user, reload):
    now = utcnow()
    user = await make_user(active_tier="PRO", subscription_status="FAILED", tier_expires_at=now - timedelta(days=1))

    job.start()
    job.start()  # second start is a no-op
    assert job.is_running()

    for _ in range(100):
        if job.last_run_at is not None:
            break
        await asyncio.sleep(0.05)
    assert job.last_run_at is not None
    assert (await _user(reload, user)).subscription_status == "GRACE"

    job.stop()
    assert not job.is_running()
    job.stop()

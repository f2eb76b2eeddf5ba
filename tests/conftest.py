import json
import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

TIER_MAPPING = {
    "default": "pdt_ignored",
    "Basic/Monthly": "pdt_basic_monthly",
    "Basic/Yearly": "pdt_basic_yearly",
    "Pro/Monthly": "pdt_pro_monthly",
    "Pro/Yearly": "pdt_pro_yearly",
    "Business/Monthly": "pdt_business_monthly",
}

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RECONCILIATION_ENABLED", "false")
os.environ.setdefault("TEST_TIER_MAPPING", json.dumps(TIER_MAPPING))

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from tiersync.core.database import Base, get_db  # noqa: E402
from tiersync.main import app  # noqa: E402
from tiersync.models.user import FREE_TIER_EXPIRY, User  # noqa: E402
from tiersync.services import dodo_payments  # noqa: E402
from tiersync.services.subscription_state import SubscriptionStateMachine  # noqa: E402
from tiersync.services.tier_catalog import TierCatalog, get_tier_catalog  # noqa: E402
from tiersync.services.webhook_dispatcher import WebhookDispatcher  # noqa: E402
from tiersync.services.webhook_events import normalize_envelope, parse_event  # noqa: E402


class Clock:
    """Real time shifted by an adjustable offset."""

    def __init__(self):
        self.offset = timedelta()

    def __call__(self) -> datetime:
        return datetime.now(timezone.utc) + self.offset

    def advance(self, **kwargs):
        self.offset += timedelta(**kwargs)


class EventFactory:
    def build(self, event_type: str, **data):
        body = {
            "business_id": "bus_test",
            "type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }
        return parse_event(normalize_envelope(body), raw=body)

    def payment(self, event_type: str, user: User, payment_id: str = "pay_1", **data):
        data.setdefault("metadata", {"user_uuid": user.user_uuid})
        data.setdefault("customer", {"customer_id": "cus_1", "email": user.email})
        data.setdefault("total_amount", 2900)
        data.setdefault("currency", "USD")
        return self.build(event_type, payment_id=payment_id, **data)

    def subscription(
        self,
        event_type: str,
        user: User,
        product_id: str = "pdt_pro_monthly",
        subscription_id: str = "sub_1",
        **data,
    ):
        data.setdefault("metadata", {"user_uuid": user.user_uuid})
        data.setdefault("customer", {"customer_id": "cus_1", "email": user.email})
        data.setdefault("status", "active")
        return self.build(event_type, subscription_id=subscription_id, product_id=product_id, **data)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def catalog():
    return TierCatalog.from_mapping(TIER_MAPPING)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def state_machine(catalog, clock):
    return SubscriptionStateMachine(catalog, clock=clock)


@pytest.fixture
def events():
    return EventFactory()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    async def _make(email=None, **fields):
        counter["n"] += 1
        fields.setdefault("active_tier", "FREE")
        fields.setdefault("tier_expires_at", FREE_TIER_EXPIRY)
        user = User(email=email or f"user{counter['n']}@example.com", **fields)
        db.add(user)
        await db.commit()
        return user

    return _make


@pytest.fixture
def reload(db):
    """Re-read a row from the database, bypassing the identity map."""

    async def _reload(model, *criteria):
        result = await db.execute(select(model).where(*criteria).execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    return _reload


@pytest.fixture
def provider(monkeypatch):
    mocks = SimpleNamespace(
        create_checkout_session=AsyncMock(
            return_value={"session_id": "cks_new", "checkout_url": "https://checkout.test/session/cks_new"}
        ),
        retrieve_checkout_session=AsyncMock(return_value={"session_id": "cks_1", "payment_id": None}),
        change_plan=AsyncMock(return_value={}),
        preview_change_plan=AsyncMock(return_value={"immediate_charge": {"summary": {"total_amount": 1500}}}),
        update_subscription=AsyncMock(return_value={"cancel_at_next_billing_date": True}),
        update_payment_method=AsyncMock(return_value={"payment_link": "https://pay.test/update"}),
    )
    for name, mock in vars(mocks).items():
        monkeypatch.setattr(dodo_payments, name, mock)
    return mocks


@pytest.fixture
async def client(db, catalog):
    async def override_get_db():
        try:
            yield db
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_tier_catalog] = lambda: catalog
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def deliver(db, state_machine):
    """Route an event through the dispatcher's handler and commit, like the webhook route does."""
    dispatcher = WebhookDispatcher(state_machine)

    async def _deliver(event):
        await dispatcher.handler_for(event.event_type)(db, event)
        await db.commit()

    return _deliver

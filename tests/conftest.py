import json
import os

# Settings are read at import time; point them at test values first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("SECRET_MANAGER_ENABLED", "false")

from datetime import datetime, timedelta, timezone
from functools import lru_cache

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.common.chapa import ChapaClient
from app.common.passwd import create_access_token, get_password_hash
from app.common.site_enums import SubscriptionStatus, UserRole
from app.config.config import Settings
from app.data.dbinit import Base
from app.data.subscription import create_subscription, create_subscription_plan
from app.data.user import create_user
from app.service.payment import PaymentService
from app.service.webhook import WebhookService

# bcrypt is slow; hash the shared test password once
@lru_cache
def password_hash():
    return get_password_hash("Passw0rd!")


PLAN_FEATURES = {
    "free-trial": dict(max_restaurants=1, max_categories=5, max_menu_items=10, max_staff_accounts=2),
    "free": dict(max_restaurants=1, max_categories=2, max_menu_items=5, max_staff_accounts=1),
    "bronze": dict(max_restaurants=1, max_categories=2, max_menu_items=3, max_staff_accounts=1),
    "silver": dict(max_restaurants=3, max_categories=10, max_menu_items=50, max_staff_accounts=5),
    "gold": dict(max_restaurants=0, max_categories=0, max_menu_items=0, max_staff_accounts=0),
}

PLAN_PRICES = {"free-trial": 0, "free": 0, "bronze": 1999, "silver": 4999, "gold": 9999}


class RecordingSink:
    """Notification sink that keeps everything in memory."""

    def __init__(self):
        self.sent = []

    async def send(self, task_type, payload):
        self.sent.append((task_type, payload))

    def of_type(self, task_type):
        return [payload for t, payload in self.sent if t == task_type]


class FakeChapa:
    """httpx transport handler standing in for the Chapa API."""

    def __init__(self):
        self.requests = []
        self.verify_results = {}
        self.fail_initialize = False
        # Replaces the JSON body of a 200 reply, keyed by "initialize" or "verify"
        self.raw_bodies = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/transaction/initialize"):
            if "initialize" in self.raw_bodies:
                return httpx.Response(200, json=self.raw_bodies["initialize"])
            if self.fail_initialize:
                return httpx.Response(500, json={"status": "failed", "message": "Internal error"})
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "message": "Hosted Link",
                    "data": {"checkout_url": f"https://checkout.chapa.co/checkout/payment/{body['tx_ref']}"},
                },
            )
        if "/transaction/verify/" in path:
            if "verify" in self.raw_bodies:
                return httpx.Response(200, json=self.raw_bodies["verify"])
            tx_ref = path.rsplit("/", 1)[-1]
            tx_status, reference = self.verify_results.get(tx_ref, ("failed", None))
            return httpx.Response(
                200,
                json={"status": "success", "data": {"status": tx_status, "reference": reference}},
            )
        return httpx.Response(404, json={"message": "not found"})

    def initialize_bodies(self):
        return [
            json.loads(r.content)
            for r in self.requests
            if r.url.path.endswith("/transaction/initialize")
        ]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        SECRET_KEY="test-secret-key",
        CHAPA_SECRET_KEY="CHASECK_TEST-abc123",
        CHAPA_WEBHOOK_SECRET="whsec_test_secret",
        CHAPA_CALLBACK_URL="https://api.example.com/api/v1/payment/chapa/webhook",
        CHAPA_RETURN_URL="https://api.example.com/payment/success",
        APP_BASE_URL="https://app.example.com",
    )


@pytest.fixture
async def engine(settings):
    engine = create_async_engine(settings.SQLALCHEMY_DATABASE_URI)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def fake_chapa():
    return FakeChapa()


@pytest.fixture
def chapa(settings, fake_chapa):
    return ChapaClient(settings, transport=httpx.MockTransport(fake_chapa.handler))


@pytest.fixture
def payment_service(db, settings, chapa, sink):
    return PaymentService(db, settings, chapa, sink)


@pytest.fixture
def webhook_service(db, settings, payment_service, sink):
    return WebhookService(db, settings, payment_service, sink)


@pytest.fixture
async def plans(db):
    created = {}
    for order, (slug, limits) in enumerate(PLAN_FEATURES.items()):
        created[slug] = await create_subscription_plan(
            db,
            name=slug.replace("-", " ").title(),
            slug=slug,
            price_monthly_cents=PLAN_PRICES[slug],
            currency="ETB",
            features=dict(limits, analytics_enabled=slug in ("silver", "gold")),
            display_order=order,
        )
    await db.commit()
    return created


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    async def _make(role=UserRole.OWNER, *, owner_id=None, restaurant_id=None, is_active=True, email=None):
        counter["n"] += 1
        user = await create_user(
            db,
            email=email or f"{role.value}{counter['n']}@example.com",
            hashed_password=password_hash(),
            full_name=f"{role.value.title()} {counter['n']}",
            role=role,
            owner_id=owner_id,
            restaurant_id=restaurant_id,
            is_active=is_active,
        )
        await db.commit()
        return user

    return _make


@pytest.fixture
def make_subscription(db):
    async def _make(owner, plan, status=SubscriptionStatus.ACTIVE, *, days_left=20, is_current=True, now=None):
        now = now or datetime.now(timezone.utc)
        end = now + timedelta(days=days_left)
        sub = await create_subscription(
            db,
            owner_id=owner.user_id,
            plan=plan,
            status=status,
            current_period_start=end - timedelta(days=30),
            current_period_end=end,
            trial_end=end if status == SubscriptionStatus.TRIALING else None,
            is_current=is_current,
        )
        await db.commit()
        return sub

    return _make


@pytest.fixture
def fetch_all(session_factory):
    """Read rows through a fresh session so nothing comes from the identity map."""
    async def _fetch(model, **filters):
        async with session_factory() as session:
            result = await session.execute(select(model).filter_by(**filters))
            return result.scalars().all()

    return _fetch


@pytest.fixture
def auth_headers(settings):
    def _headers(user):
        token = create_access_token(str(user.user_id), UserRole(user.role), settings.SECRET_KEY)
        return {"Authorization": f"Bearer {token}"}

    return _headers

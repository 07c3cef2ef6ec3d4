"""Shared test fixtures for all test groups."""

import os

# Module-level env setup: applied before any billing_sync module reads settings
os.environ["DEBUG"] = "true"
os.environ["METRICS_ENABLED"] = "false"
os.environ["AUTH_JWT_SECRET"] = "test-jwt-secret-with-at-least-32-bytes!!"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["FRONTEND_URL"] = "https://app.test"
os.environ["STRIPE_PRICE_STARTER_MONTHLY"] = "price_starter_mo"
os.environ["STRIPE_PRICE_STARTER_ANNUALLY"] = "price_starter_yr"
os.environ["STRIPE_PRICE_PROFESSIONAL_MONTHLY"] = "price_pro_mo"
os.environ["STRIPE_PRICE_PROFESSIONAL_ANNUALLY"] = "price_pro_yr"
os.environ["STRIPE_PRICE_ENTERPRISE_MONTHLY"] = "price_ent_mo"
os.environ["STRIPE_PRICE_ENTERPRISE_ANNUALLY"] = "price_ent_yr"

from unittest.mock import AsyncMock  # noqa: E402

import fakeredis  # noqa: E402
import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from billing_sync.core.config import get_settings  # noqa: E402
from billing_sync.db.base import Base  # noqa: E402
from billing_sync.domain.plans import PlanCatalog  # noqa: E402
from billing_sync.services.subscription_store import SubscriptionStore  # noqa: E402
from factories import CUSTOMER_ID, make_subscription  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Re-read env for every test so monkeypatched variables take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite engine with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")

    import billing_sync.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory) -> SubscriptionStore:
    return SubscriptionStore(session_factory)


@pytest.fixture
def catalog() -> PlanCatalog:
    return PlanCatalog.from_settings()


@pytest.fixture
def gateway():
    """StripeGateway stand-in with canned processor responses."""
    fake = AsyncMock()
    fake.create_customer.return_value = CUSTOMER_ID
    fake.create_checkout_session.return_value = "https://checkout.stripe.test/c/pay/cs_test_1"
    fake.create_portal_session.return_value = "https://billing.stripe.test/p/session/bps_1"
    fake.retrieve_subscription.return_value = make_subscription()
    return fake


@pytest.fixture
async def fake_redis():
    redis = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield redis
    await redis.flushall()
    await redis.aclose()


@pytest.fixture
def api_app(store, gateway, catalog, fake_redis):
    """Full application with store, gateway and Redis swapped for test doubles.

    The lifespan is not run: ASGITransport does not send lifespan events.
    """
    from billing_sync.api.routes import billing
    from billing_sync.main import create_app
    from billing_sync.services.notifier import StatusNotifier

    app = create_app()
    app.dependency_overrides[billing.get_store] = lambda: store
    app.dependency_overrides[billing.get_gateway] = lambda: gateway
    app.dependency_overrides[billing.get_catalog] = lambda: catalog
    app.dependency_overrides[billing.get_notifier] = lambda: StatusNotifier(fake_redis)
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def client(api_app):
    transport = httpx.ASGITransport(app=api_app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

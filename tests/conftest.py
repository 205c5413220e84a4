"""Shared fixtures: temp SQLite database, in-memory payment gateway and mail transport."""
import pytest
import pytest_asyncio

from storefront.core.config import Settings
from storefront.core.database import build_engine, build_session_maker, create_all
from storefront.core.ledger import OrderLedger
from storefront.core.services import build_services
from tests.fakes import ADMIN_KEY, FakeGateway, FakeTransport


@pytest.fixture
def config(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'storefront-test.db'}",
        ENVIRONMENT="test",
        ADMIN_API_KEY=ADMIN_KEY,
        ADMIN_NOTIFICATION_EMAILS=["ops@example.com"],
        TRANSPORT_WEBHOOK_SECRET="transport-secret",
        VERIFY_MAX_ATTEMPTS=3,
        VERIFY_BACKOFF_SECONDS=0.001,
        VERIFY_BACKOFF_MAX_SECONDS=0.002,
        VERIFY_TIMEOUT_SECONDS=2.0,
        RETRY_BASE_SECONDS=0.0,
        RETRY_JITTER_SECONDS=0.0,
        DISPATCH_MAX_RETRIES=3,
        RATE_LIMIT_PER_HOUR=2,
        BACKGROUND_WORKERS_ENABLED=False,
    )


@pytest_asyncio.fixture
async def engine(config):
    engine = build_engine(config)
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return build_session_maker(engine)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def services(config, session_maker, gateway, transport):
    return build_services(config, session_maker, gateway=gateway, transport=transport)


@pytest.fixture
def make_order(session_maker):
    async def factory(subtotal: int = 500000, delivery_fee: int = 0, discount: int = 0, currency: str = "NGN",
                      email: str = "ada@example.com", order_type: str = "delivery"):
        async with session_maker() as session:
            order = await OrderLedger(session).create_order(
                customer_name="Ada Obi",
                customer_email=email,
                currency=currency,
                subtotal=subtotal,
                delivery_fee=delivery_fee,
                discount=discount,
                order_type=order_type,
            )
            await session.commit()
            return order

    return factory

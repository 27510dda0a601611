from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from order_service.database import create_session_factory, init_db
from order_service.gateway import (
    ChargeInitiation,
    ChargeVerification,
    compute_signature,
    verify_webhook_signature,
)
from order_service.orchestrator import OrderLifecycle
from order_service.store import OrderStore

WEBHOOK_SECRET = "sk_test_secret"


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def gateway():
    """Gateway double: async API calls are mocks, signature checks are real."""
    gateway = MagicMock()
    gateway.initialize_charge = AsyncMock(
        side_effect=lambda charge: ChargeInitiation(
            authorization_url=f"https://checkout.paystack.com/{charge.reference}",
            reference=charge.reference,
        )
    )
    gateway.verify_charge = AsyncMock(
        side_effect=lambda reference: ChargeVerification(reference=reference, gateway_status="success")
    )
    gateway.verify_webhook_signature = MagicMock(
        side_effect=lambda raw, header: verify_webhook_signature(raw, header, WEBHOOK_SECRET)
    )
    return gateway


@pytest.fixture
def publisher():
    return AsyncMock()


@pytest.fixture
def lifecycle(store, gateway, publisher):
    return OrderLifecycle(store, gateway, publisher, currency="GHS", verify_attempts=3, verify_retry_wait=0)


@pytest.fixture
def sign():
    return lambda raw: compute_signature(raw, WEBHOOK_SECRET)


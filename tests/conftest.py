"""Shared test fixtures."""

from decimal import Decimal

import pytest
import pytest_asyncio

from app.database import build_engine, build_session_factory, create_tables
from app.engine.orchestrator import PaymentOrchestrator
from app.models.transaction import Order
from app.providers.manual import ManualProvider
from app.providers.registry import ProviderRegistry
from app.providers.vnpay import VnpayProvider
from helpers import VNPAY_SECRET, VNPAY_TMN, CountingOrderGateway, ScriptedProvider


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """
    Fresh file-backed database per test.

    File-backed rather than :memory: so concurrent sessions see one database.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await create_tables(engine)

    factory = build_session_factory(engine)
    async with factory() as session:
        session.add_all([
            Order(id="O1", user_id="U1", total_amount=Decimal("250000"), currency="VND"),
            Order(id="O2", user_id="U1", total_amount=Decimal("1200000"), currency="VND"),
            Order(id="O3", user_id="U2", total_amount=Decimal("89000"), currency="VND"),
            Order(id="O10", user_id="U4", total_amount=Decimal("49.90"), currency="USD"),
            Order(id="O21", user_id="U1", total_amount=Decimal("150000"), currency="VND",
                  booking_status="CANCELLED"),
        ])
        await session.commit()

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def vnpay():
    return VnpayProvider(
        tmn_code=VNPAY_TMN,
        hash_secret=VNPAY_SECRET,
        payment_url="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
        return_url="https://shop.example.test/return",
    )


@pytest.fixture
def fake_provider():
    return ScriptedProvider()


@pytest.fixture
def orders():
    return CountingOrderGateway()


@pytest.fixture
def orchestrator(session_factory, vnpay, fake_provider, orders):
    registry = ProviderRegistry([vnpay, fake_provider, ManualProvider()])
    return PaymentOrchestrator(
        session_factory,
        registry,
        orders,
        provider_timeout=0.5,
        attempt_ttl_minutes=15,
        elevated_roles=["ADMIN", "STAFF"],
    )

"""Service test fixtures — in-memory database, wired components, fake network.

Invariants:
    - Every test gets a fresh in-memory SQLite database
    - db is a real DatabaseSessionManager bound to the test engine, so the
      error mapping and transaction behavior under test are the production ones
    - Retry delays are zero; nothing in these tests sleeps

Design Decisions:
    - SQLite in-memory over PostgreSQL: the Amount column type keeps decimals
      exact on SQLite, and row locks are not exercised here
    - StaticPool: one shared connection, so every session sees the same
      in-memory database
"""

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from fee_distributor.db.base import Base
import fee_distributor.infrastructure.database as db_module
from fee_distributor.infrastructure.database import DatabaseSessionManager
from fee_distributor.models.asset import Asset
from fee_distributor.models.ledger_event import LedgerEvent
from fee_distributor.services.batch_executor import BatchExecutor
from fee_distributor.services.batch_outbox import BatchOutbox
from fee_distributor.services.cursor_store import CursorStore
from fee_distributor.services.ledger_aggregator import LedgerAggregator
from fee_distributor.main import app
from fee_distributor.services.reconciliation_driver import ReconciliationDriver

from tests.services.fake_network import FakeCredential, FakeTransferNetwork


@pytest.fixture
async def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db(test_engine):
    manager = DatabaseSessionManager.__new__(DatabaseSessionManager)
    manager.engine = test_engine
    manager._session_factory = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False,
    )
    return manager


@pytest.fixture
def outbox(db):
    return BatchOutbox(db)


@pytest.fixture
def cursor_store(db):
    return CursorStore(db, lease_name="fee-distribution")


@pytest.fixture
def network():
    return FakeTransferNetwork()


@pytest.fixture
def aggregator(db, outbox):
    return LedgerAggregator(
        db, outbox,
        fee_rate=Decimal("0.002"),
        min_payable=Decimal("0.001"),
        decimals=9,
    )


async def _no_sleep(_seconds):
    return None


def make_executor(outbox, network, **overrides):
    options = dict(
        batch_size=10,
        fee_adjustment=Decimal("0.99"),
        decimals=9,
        max_retries=3,
        retry_delay_seconds=2.0,
        confirm_timeout_seconds=60.0,
        sleep=_no_sleep,
    )
    options.update(overrides)
    return BatchExecutor(outbox, network, FakeCredential(), **options)


@pytest.fixture
def executor(outbox, network):
    return make_executor(outbox, network)


@pytest.fixture
def driver(cursor_store, aggregator, executor):
    return ReconciliationDriver(
        cursor_store, aggregator, executor,
        worker_id="worker-a", lease_ttl_seconds=120,
    )


@pytest.fixture
def seed(db):
    """Insert ledger events and asset mappings.

    events: iterable of (id, asset_ref, quantity-as-str)
    assets: {asset_ref: recipient_address}
    """
    async def _seed(events=(), assets=None):
        async with db.transaction() as s:
            for asset_ref, recipient in (assets or {}).items():
                s.add(Asset(asset_ref=asset_ref, recipient_address=recipient))
            for event_id, asset_ref, quantity in events:
                s.add(LedgerEvent(
                    id=event_id, asset_ref=asset_ref, quantity=Decimal(quantity),
                ))
    return _seed


@pytest.fixture
async def client(db, driver):
    """FastAPI test client bound to the test database and driver."""
    original_manager = db_module.db_manager
    db_module.db_manager = db
    app.state.driver = driver

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    ) as c:
        yield c

    app.state.driver = None
    db_module.db_manager = original_manager

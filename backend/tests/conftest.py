"""
Test Configuration — Fixtures for async DB, operation context, and seed data.

Every test gets its own in-memory SQLite database (StaticPool keeps the
single connection alive for the engine's lifetime), so workflows are free
to commit through OperationContext.unit_of_work().
"""

import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from core.audit import MemoryAuditSink
from core.context import build_context
from db.session import Base
from inventory.locks import ProductLockRegistry

TEST_DATABASE_URL = "sqlite+aiosqlite://"

SHIRT_ID = uuid.UUID("00000000-0000-0000-0000-00000000a001")
FABRIC_ID = uuid.UUID("00000000-0000-0000-0000-00000000b001")
BUTTONS_ID = uuid.UUID("00000000-0000-0000-0000-00000000b002")
POLYBAG_ID = uuid.UUID("00000000-0000-0000-0000-00000000c001")
CUSTOMER_ID = uuid.UUID("00000000-0000-0000-0000-00000000d001")


@pytest.fixture
async def test_engine():
    """Fresh in-memory database with every table created."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def ctx(test_db, audit_sink):
    """OperationContext recording audit events in memory, with its own lock registry."""
    return build_context(
        test_db,
        audit=audit_sink,
        locks=ProductLockRegistry(timeout_seconds=2.0),
        actor="test-user",
    )


@pytest.fixture
async def seeded_db(test_db):
    """Seed locations, a shirt with its materials, packaging, and a credit customer."""
    from db.models import Customer, Location, Product

    test_db.add_all(
        [
            Location(location_id="MAIN", name="Main Warehouse", location_type="warehouse"),
            Location(location_id="SECOND", name="Downtown Store", location_type="store"),
            Location(location_id="CLOSED", name="Closed Outlet", location_type="store", is_active=False),
        ]
    )
    test_db.add_all(
        [
            Product(
                product_id=SHIRT_ID,
                sku="SHIRT-OXF-M",
                name="Oxford Shirt M",
                item_type="finished_good",
                unit_cost=8.0,
                price_tiers={"retail": 25.0, "wholesale": 18.0},
                lead_time_days=7,
                order_cost=50.0,
                holding_cost_pct=0.25,
                low_threshold=10,
            ),
            Product(
                product_id=FABRIC_ID,
                sku="FAB-OXF-BLUE",
                name="Oxford Fabric Blue (m)",
                item_type="raw_material",
                unit_cost=4.0,
                lead_time_days=7,
                order_cost=40.0,
                holding_cost_pct=0.2,
                low_threshold=20,
            ),
            Product(
                product_id=BUTTONS_ID,
                sku="BTN-WHITE-11",
                name="White Button 11mm",
                item_type="raw_material",
                unit_cost=0.05,
                lead_time_days=3,
                order_cost=10.0,
                holding_cost_pct=0.1,
                low_threshold=100,
            ),
            Product(
                product_id=POLYBAG_ID,
                sku="PKG-POLY-S",
                name="Polybag Small",
                item_type="packaging",
                unit_cost=0.02,
            ),
        ]
    )
    test_db.add(Customer(customer_id=CUSTOMER_ID, name="Harbor Boutique", credit_limit=100.0))
    await test_db.commit()

    return {
        "shirt_id": SHIRT_ID,
        "fabric_id": FABRIC_ID,
        "buttons_id": BUTTONS_ID,
        "polybag_id": POLYBAG_ID,
        "customer_id": CUSTOMER_ID,
    }

"""
Test Configuration — Fixtures for async DB, test client, and seeded KPI inputs.

Each test gets its own in-memory SQLite database. The KPI engine commits per
table, so tests run against real commits instead of a rolled-back outer
transaction; the database is dropped with the engine afterwards.
"""

import uuid
from datetime import date

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_current_user, get_db, get_tenant_db
from api.main import app
from api.v1.routers.inventory_kpi import get_kpi_lock_factory
from core.config import Settings
from db.session import Base

# In-memory SQLite (no RLS / advisory locks). StaticPool keeps one connection
# so every session sees the same database.
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TENANT_ID = "00000000-0000-0000-0000-000000000001"
OTHER_TENANT_ID = "00000000-0000-0000-0000-000000000002"
AS_OF = date(2026, 3, 1)


@pytest.fixture
async def test_engine():
    """Create a test database engine and build all tables."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    """Session on the test database; objects stay usable after commits."""
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def kpi_settings():
    """Engine settings for tests: no Redis lock, small pages."""
    return Settings(
        kpi_run_lock_enabled=False,
        kpi_page_size=2,
        kpi_insert_batch_size=2,
        kpi_default_unit_cost=100.0,
        kpi_job_timeout_seconds=60,
    )


@pytest.fixture
def mock_user():
    """Mock authenticated user."""
    return {
        "sub": "auth0|test-user-id",
        "email": "planner@controltower.test",
        "tenant_id": TENANT_ID,
    }


@pytest.fixture
async def client(test_db, mock_user):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    async def override_get_tenant_db():
        """Skip set_config (SQLite doesn't support it), return session directly."""
        return test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_tenant_db] = override_get_tenant_db
    app.dependency_overrides[get_kpi_lock_factory] = lambda: None

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


async def seed_kpi_inputs(db: AsyncSession, tenant_id: str = TENANT_ID) -> dict:
    """
    Seed one tenant with a small network:

      stores:  A, B (retail), WH (central warehouse), CLOSED (inactive retail)
      TEE:     sizes S/M/L; A holds S+M+L, B holds S only -> distortion + completeness
      CAP:     single size OS; stocked at A with an unmapped sku
      JACKET:  sizes S/M; only 10 units in the network against 2/day at A -> shortage
    """
    from db.models import DemandSignal, InventoryPosition, InvStore, SizeMapping, StyleUnitCost, Tenant

    tenant_uuid = uuid.UUID(tenant_id)
    db.add(Tenant(tenant_id=tenant_uuid, name="Test Apparel", status="active"))
    await db.flush()

    store_a = InvStore(tenant_id=tenant_uuid, store_name="Store A", store_code="A", location_type="retail")
    store_b = InvStore(tenant_id=tenant_uuid, store_name="Store B", store_code="B", location_type="retail")
    warehouse = InvStore(
        tenant_id=tenant_uuid, store_name="Central", store_code="WH", location_type="central_warehouse"
    )
    closed = InvStore(
        tenant_id=tenant_uuid, store_name="Closed", store_code="X", location_type="retail", is_active=False
    )
    db.add_all([store_a, store_b, warehouse, closed])
    await db.flush()

    def position(store, style_id, sku, on_hand):
        return InventoryPosition(
            tenant_id=tenant_uuid, store_id=store.id, style_id=style_id, sku=sku, on_hand=on_hand
        )

    db.add_all(
        [
            position(store_a, "TEE", "TEE-S", 40),
            position(store_a, "TEE", "TEE-M", 30),
            position(store_a, "TEE", "TEE-L", 30),
            position(store_b, "TEE", "TEE-S", 400),
            position(store_b, "TEE", "TEE-M", 0),
            position(warehouse, "TEE", "TEE-L", 500),
            position(closed, "TEE", "TEE-M", 50),
            position(store_a, "CAP", "CAP-UNMAPPED", 5),
            position(store_a, "JACKET", "JACKET-S", 10),
        ]
    )
    db.add_all(
        [
            DemandSignal(
                tenant_id=tenant_uuid, store_id=store_a.id, style_id="TEE", avg_daily_sales=10, sales_velocity=10
            ),
            DemandSignal(
                tenant_id=tenant_uuid, store_id=store_b.id, style_id="TEE", avg_daily_sales=10, sales_velocity=10
            ),
            DemandSignal(
                tenant_id=tenant_uuid, store_id=store_a.id, style_id="JACKET", avg_daily_sales=2, sales_velocity=2
            ),
        ]
    )
    db.add_all(
        [
            SizeMapping(tenant_id=tenant_uuid, style_id="TEE", sku="TEE-S", size_code="S"),
            SizeMapping(tenant_id=tenant_uuid, style_id="TEE", sku="TEE-M", size_code="M"),
            SizeMapping(tenant_id=tenant_uuid, style_id="TEE", sku="TEE-L", size_code="L"),
            SizeMapping(tenant_id=tenant_uuid, style_id="CAP", sku="CAP-OS", size_code="OS"),
            SizeMapping(tenant_id=tenant_uuid, style_id="JACKET", sku="JACKET-S", size_code="S"),
            SizeMapping(tenant_id=tenant_uuid, style_id="JACKET", sku="JACKET-M", size_code="M"),
        ]
    )
    db.add(StyleUnitCost(tenant_id=tenant_uuid, style_id="TEE", unit_cost=12.5))
    await db.commit()

    return {
        "tenant_id": tenant_uuid,
        "store_a": store_a,
        "store_b": store_b,
        "warehouse": warehouse,
        "closed": closed,
    }


@pytest.fixture
async def seeded_db(test_db):
    """Seed the test DB with a tenant and KPI inputs."""
    return await seed_kpi_inputs(test_db)


@pytest.fixture
def seed_inputs():
    """The seeding helper, for tests that seed several tenants or their own database."""
    return seed_kpi_inputs

import asyncio

import pytest
from celery.exceptions import Retry
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import Settings
from db.session import Base
from kpi.errors import KpiRunFailed
from workers.inventory_kpi import compute_inventory_kpis

TENANT_ID = "00000000-0000-0000-0000-000000000001"


def _prepare_database(tmp_path, seed_inputs) -> str:
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'kpi.db'}"

    async def _seed() -> None:
        engine = create_async_engine(db_url, echo=False)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)() as db:
            await seed_inputs(db)
        await engine.dispose()

    asyncio.run(_seed())
    return db_url


def _fetch_run_statuses(db_url: str) -> list[str]:
    from db.models import KpiEngineRun

    async def _fetch():
        engine = create_async_engine(db_url, echo=False)
        try:
            async with async_sessionmaker(engine, class_=AsyncSession)() as db:
                result = await db.execute(select(KpiEngineRun.status, KpiEngineRun.trigger))
                return [(row.status, row.trigger) for row in result.all()]
        finally:
            await engine.dispose()

    return asyncio.run(_fetch())


def test_compute_inventory_kpis_writes_snapshot(tmp_path, monkeypatch, seed_inputs):
    db_url = _prepare_database(tmp_path, seed_inputs)
    monkeypatch.setattr(
        "core.config.get_settings",
        lambda: Settings(database_url=db_url, kpi_run_lock_enabled=False, kpi_default_unit_cost=100.0),
    )

    result = compute_inventory_kpis.run(tenant_id=TENANT_ID, as_of_date="2026-03-01", trigger="scheduled")

    assert result["success"] is True
    assert result["date"] == "2026-03-01"
    assert (result["idi_rows"], result["scs_rows"], result["chi_rows"], result["gap_rows"]) == (1, 4, 3, 1)
    assert result["celery_task_id"] == "manual"
    assert _fetch_run_statuses(db_url) == [("success", "scheduled")]


def test_compute_inventory_kpis_reports_unknown_tenant_without_retry(tmp_path, monkeypatch, seed_inputs):
    db_url = _prepare_database(tmp_path, seed_inputs)
    monkeypatch.setattr(
        "core.config.get_settings",
        lambda: Settings(database_url=db_url, kpi_run_lock_enabled=False),
    )

    result = compute_inventory_kpis.run(tenant_id="00000000-0000-0000-0000-0000000000ee", as_of_date="2026-03-01")

    assert result["success"] is False
    assert result["errors"][0].startswith("unknown tenant_id")


def test_compute_inventory_kpis_retries_on_database_error(tmp_path, monkeypatch, seed_inputs):
    db_url = _prepare_database(tmp_path, seed_inputs)
    monkeypatch.setattr(
        "core.config.get_settings",
        lambda: Settings(database_url=db_url, kpi_run_lock_enabled=False),
    )

    async def _connection_reset(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection reset"))

    monkeypatch.setattr("kpi.engine.load_inputs", _connection_reset)

    retried: list[Exception] = []

    def _capture_retry(exc=None, **kwargs):
        retried.append(exc)
        raise Retry(exc=exc)

    monkeypatch.setattr(compute_inventory_kpis, "retry", _capture_retry)

    with pytest.raises(Retry):
        compute_inventory_kpis.run(tenant_id=TENANT_ID, as_of_date="2026-03-01")

    assert len(retried) == 1
    assert isinstance(retried[0], KpiRunFailed)
    assert "connection reset" in str(retried[0])
    assert _fetch_run_statuses(db_url) == [("failed", "manual")]

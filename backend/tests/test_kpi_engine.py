"""
End-to-end tests for the inventory KPI engine against the seeded network.

Expected snapshot for the seed (see conftest.seed_kpi_inputs):
  IDI:  TEE (A doc 10, B doc 40) -> 15.0, overstock [B], understock [A]
  SCS:  TEE@A 1.0, TEE@B 0.3333, CAP@A 1.0 (single-size fallback), JACKET@A 0.5
  CHI:  CAP LOW, JACKET MEDIUM, TEE MEDIUM
  GAP:  JACKET only (10 units vs 56 projected); TEE is covered by the warehouse
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import date

import pytest
from sqlalchemy import func, select

from db.models import CurveHealth, InventoryDistortion, KpiEngineRun, NetworkGap, SizeCompleteness, Tenant
from kpi.curve_health import CurveHealthRecord
from kpi.engine import InventoryKpiEngine, parse_run_request, run_inventory_kpi_engine
from kpi.errors import InvalidRunRequest, SnapshotLockError

TENANT_ID = "00000000-0000-0000-0000-000000000001"
AS_OF = date(2026, 3, 1)


SNAPSHOT_MODELS = (InventoryDistortion, SizeCompleteness, CurveHealth, NetworkGap)


async def _snapshot_contents(db):
    """Every KPI row minus its generated id and created_at, per table."""
    contents = {}
    for model in SNAPSHOT_MODELS:
        columns = [c for c in model.__table__.columns if c.name not in ("id", "created_at")]
        result = await db.execute(select(*columns))
        contents[model.__tablename__] = sorted(repr(tuple(row)) for row in result.all())
    return contents


async def _runs(db):
    result = await db.execute(
        select(KpiEngineRun.status, KpiEngineRun.trigger, KpiEngineRun.scs_rows, KpiEngineRun.errors).order_by(
            KpiEngineRun.started_at
        )
    )
    return result.all()


class TestParseRunRequest:
    def test_defaults_to_today(self):
        tenant_uuid, run_date = parse_run_request(TENANT_ID)

        assert tenant_uuid == uuid.UUID(TENANT_ID)
        assert isinstance(run_date, date)

    def test_accepts_iso_date_string(self):
        assert parse_run_request(TENANT_ID, "2026-03-01")[1] == AS_OF

    @pytest.mark.parametrize(
        "tenant_id, as_of_date, message",
        [
            (None, None, "tenant_id required"),
            ("  ", None, "tenant_id required"),
            ("not-a-uuid", None, "invalid tenant_id"),
            (TENANT_ID, "2026-13-45", "invalid as_of_date"),
        ],
    )
    def test_rejects_bad_input(self, tenant_id, as_of_date, message):
        with pytest.raises(InvalidRunRequest, match=message):
            parse_run_request(tenant_id, as_of_date)


class TestEngineRun:
    async def test_full_run_writes_all_tables(self, test_db, seeded_db, kpi_settings):
        summary = await run_inventory_kpi_engine(test_db, TENANT_ID, as_of_date=AS_OF, settings=kpi_settings)

        assert summary.success is True
        assert summary.date == "2026-03-01"
        assert (summary.idi_rows, summary.scs_rows, summary.chi_rows, summary.gap_rows) == (1, 4, 3, 1)
        assert summary.errors == []
        assert summary.degraded is False
        assert summary.cost_basis == "estimated"
        assert "errors" not in summary.to_dict()

        idi = (await test_db.execute(select(InventoryDistortion))).scalar_one()
        assert idi.style_id == "TEE"
        assert idi.distortion_score == 15.0
        assert idi.overstock_locations == [str(seeded_db["store_b"].id)]
        assert idi.understock_locations == [str(seeded_db["store_a"].id)]
        assert idi.locked_cash_estimate == 5000.0

        gap = (await test_db.execute(select(NetworkGap))).scalar_one()
        assert gap.style_id == "JACKET"
        assert gap.true_shortage_units == 46
        assert gap.revenue_at_risk == 4600.0

        bands = dict((await test_db.execute(select(CurveHealth.style_id, CurveHealth.risk_band))).all())
        assert bands == {"CAP": "LOW", "JACKET": "MEDIUM", "TEE": "MEDIUM"}

        statuses = dict(
            (
                await test_db.execute(
                    select(SizeCompleteness.store_id, SizeCompleteness.status).where(SizeCompleteness.style_id == "TEE")
                )
            ).all()
        )
        assert statuses == {seeded_db["store_a"].id: "HEALTHY", seeded_db["store_b"].id: "AT_RISK"}

        runs = await _runs(test_db)
        assert len(runs) == 1
        assert runs[0].status == "success"
        assert runs[0].scs_rows == 4

    async def test_rerun_same_day_is_idempotent(self, test_db, seeded_db, kpi_settings):
        first = await run_inventory_kpi_engine(test_db, TENANT_ID, as_of_date=AS_OF, settings=kpi_settings)
        after_first = await _snapshot_contents(test_db)
        second = await run_inventory_kpi_engine(test_db, TENANT_ID, as_of_date=AS_OF, settings=kpi_settings)
        after_second = await _snapshot_contents(test_db)

        row_counts = ("idi_rows", "scs_rows", "chi_rows", "gap_rows")
        assert [first.to_dict()[k] for k in row_counts] == [second.to_dict()[k] for k in row_counts] == [1, 4, 3, 1]
        assert first.run_id != second.run_id
        assert after_second == after_first
        assert {table: len(rows) for table, rows in after_second.items()} == {
            "kpi_inventory_distortion": 1,
            "kpi_size_completeness": 4,
            "kpi_curve_health": 3,
            "kpi_network_gap": 1,
        }

    async def test_empty_inputs_succeed_with_zero_rows(self, test_db, kpi_settings):
        test_db.add(Tenant(tenant_id=uuid.UUID(TENANT_ID), name="Empty Tenant"))
        await test_db.commit()

        summary = await run_inventory_kpi_engine(test_db, TENANT_ID, as_of_date=AS_OF, settings=kpi_settings)

        assert summary.success is True
        assert (summary.idi_rows, summary.scs_rows, summary.chi_rows, summary.gap_rows) == (0, 0, 0, 0)
        assert summary.errors == []

    async def test_missing_tenant_id(self, test_db, kpi_settings):
        summary = await run_inventory_kpi_engine(test_db, None, settings=kpi_settings)

        assert summary.success is False
        assert summary.failure == "invalid_request"
        assert summary.to_dict()["errors"] == ["tenant_id required"]
        assert await _runs(test_db) == []

    async def test_unknown_tenant_is_rejected(self, test_db, kpi_settings):
        summary = await run_inventory_kpi_engine(test_db, str(uuid.uuid4()), as_of_date=AS_OF, settings=kpi_settings)

        assert summary.success is False
        assert summary.failure == "invalid_request"
        assert summary.errors[0].startswith("unknown tenant_id")
        assert summary.run_id is None

    async def test_held_lock_rejects_run(self, test_db, seeded_db, kpi_settings):
        @asynccontextmanager
        async def held_lock(tenant_id, as_of_date):
            raise SnapshotLockError(tenant_id, as_of_date.isoformat())
            yield

        engine = InventoryKpiEngine(test_db, settings=kpi_settings, lock_factory=held_lock)
        summary = await engine.run(TENANT_ID, as_of_date=AS_OF)

        assert summary.success is False
        assert summary.failure == "locked"
        assert "already in progress" in summary.errors[0]
        assert await _runs(test_db) == []

    async def test_lock_wraps_the_whole_run(self, test_db, seeded_db, kpi_settings):
        events = []

        @asynccontextmanager
        async def recording_lock(tenant_id, as_of_date):
            events.append(("acquire", tenant_id, as_of_date))
            yield
            events.append(("release", tenant_id, as_of_date))

        engine = InventoryKpiEngine(test_db, settings=kpi_settings, lock_factory=recording_lock)
        summary = await engine.run(TENANT_ID, as_of_date=AS_OF, trigger="scheduled")

        assert summary.success is True
        assert events == [("acquire", TENANT_ID, AS_OF), ("release", TENANT_ID, AS_OF)]
        runs = await _runs(test_db)
        assert runs[0].trigger == "scheduled"

    async def test_timeout_before_write_leaves_snapshot_untouched(self, test_db, seeded_db, kpi_settings, monkeypatch):
        await run_inventory_kpi_engine(test_db, TENANT_ID, as_of_date=AS_OF, settings=kpi_settings)

        async def slow_load(*args, **kwargs):
            await asyncio.sleep(5)

        monkeypatch.setattr("kpi.engine.load_inputs", slow_load)
        fast_settings = kpi_settings.model_copy(update={"kpi_job_timeout_seconds": 0.05})

        summary = await run_inventory_kpi_engine(test_db, TENANT_ID, as_of_date=AS_OF, settings=fast_settings)

        assert summary.success is False
        assert summary.failure == "timeout"
        assert summary.errors == ["timed out after 0.05s before writing snapshots"]
        count = await test_db.execute(select(func.count()).select_from(SizeCompleteness))
        assert count.scalar_one() == 4
        assert [run.status for run in await _runs(test_db)] == ["success", "failed"]

    async def test_table_write_failure_is_partial(self, test_db, seeded_db, kpi_settings, monkeypatch):
        monkeypatch.setattr(
            "kpi.engine.calculate_curve_health",
            lambda completeness: [CurveHealthRecord(style_id=None, curve_health_index=0.5, risk_band="MEDIUM")],
        )

        summary = await run_inventory_kpi_engine(test_db, TENANT_ID, as_of_date=AS_OF, settings=kpi_settings)

        assert summary.success is True
        assert summary.chi_rows == 0
        assert (summary.idi_rows, summary.scs_rows, summary.gap_rows) == (1, 4, 1)
        assert len(summary.errors) == 1
        assert summary.errors[0].startswith("kpi_curve_health:")
        runs = await _runs(test_db)
        assert runs[0].status == "partial"
        assert len(runs[0].errors) == 1

    async def test_unexpected_error_is_reported(self, test_db, seeded_db, kpi_settings, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("calculator crashed")

        monkeypatch.setattr("kpi.engine.calculate_network_gap", explode)

        summary = await run_inventory_kpi_engine(test_db, TENANT_ID, as_of_date=AS_OF, settings=kpi_settings)

        assert summary.success is False
        assert summary.failure == "error"
        assert summary.errors == ["calculator crashed"]
        assert [run.status for run in await _runs(test_db)] == ["failed"]
        count = await test_db.execute(select(func.count()).select_from(InventoryDistortion))
        assert count.scalar_one() == 0

    async def test_tenants_are_isolated(self, test_db, seeded_db, seed_inputs, kpi_settings):
        other = "00000000-0000-0000-0000-000000000002"
        await seed_inputs(test_db, tenant_id=other)

        await run_inventory_kpi_engine(test_db, TENANT_ID, as_of_date=AS_OF, settings=kpi_settings)
        await run_inventory_kpi_engine(test_db, other, as_of_date=AS_OF, settings=kpi_settings)
        await run_inventory_kpi_engine(test_db, TENANT_ID, as_of_date=AS_OF, settings=kpi_settings)

        result = await test_db.execute(
            select(SizeCompleteness.tenant_id, func.count()).group_by(SizeCompleteness.tenant_id)
        )
        assert dict(result.all()) == {uuid.UUID(TENANT_ID): 4, uuid.UUID(other): 4}

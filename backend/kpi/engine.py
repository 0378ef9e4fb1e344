"""
Inventory KPI Engine — daily IDI / SCS / CHI / Network Gap snapshot job.

Pipeline per (tenant_id, as_of_date):
  Load → Classify stores → {IDI, SCS → CHI, Network Gap} → Write snapshots

IDI, SCS and Network Gap share no data and run as concurrent worker-thread
tasks; CHI runs once SCS has finished. The snapshot writer replaces each KPI
table independently (see kpi.snapshot).

Invocation contract:
  in:  tenant_id (required), as_of_date (optional, defaults to today UTC)
  out: {success, date, idi_rows, scs_rows, chi_rows, gap_rows, errors?,
        degraded, truncated_inputs, cost_basis, run_id}

success is False only when the run could not complete (bad request, lock
held, timeout, unhandled error). Per-table write failures keep success=True
and are listed in errors; the audit row is marked "partial".
"""

import asyncio
import contextlib
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from db.models import KpiEngineRun, Tenant
from kpi.completeness import CompletenessRecord, SizeIndex, calculate_completeness
from kpi.costs import UnitCostLookup
from kpi.curve_health import CurveHealthRecord, calculate_curve_health
from kpi.distortion import DistortionRecord, calculate_distortion
from kpi.errors import InvalidRunRequest, KpiEngineError, SnapshotLockError
from kpi.loader import LoadedInputs, load_inputs
from kpi.network_gap import NetworkGapRecord, calculate_network_gap
from kpi.snapshot import write_snapshots
from kpi.stores import classify_stores

logger = structlog.get_logger()


@dataclass
class KpiResults:
    distortion: list[DistortionRecord]
    completeness: list[CompletenessRecord]
    curve_health: list[CurveHealthRecord]
    network_gap: list[NetworkGapRecord]
    cost_basis: str

    def by_table(self) -> dict[str, list]:
        return {
            "idi": self.distortion,
            "scs": self.completeness,
            "chi": self.curve_health,
            "gap": self.network_gap,
        }


@dataclass
class KpiRunSummary:
    success: bool
    date: str | None
    idi_rows: int = 0
    scs_rows: int = 0
    chi_rows: int = 0
    gap_rows: int = 0
    errors: list[str] = field(default_factory=list)
    degraded: bool = False
    truncated_inputs: list[str] = field(default_factory=list)
    cost_basis: str | None = None
    run_id: str | None = None
    # invalid_request, locked, timeout, error; not part of the payload
    failure: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "success": self.success,
            "date": self.date,
            "idi_rows": self.idi_rows,
            "scs_rows": self.scs_rows,
            "chi_rows": self.chi_rows,
            "gap_rows": self.gap_rows,
            "degraded": self.degraded,
            "truncated_inputs": list(self.truncated_inputs),
            "cost_basis": self.cost_basis,
            "run_id": self.run_id,
        }
        if self.errors:
            payload["errors"] = list(self.errors)
        return payload


def parse_run_request(tenant_id: Any, as_of_date: Any = None) -> tuple[uuid.UUID, date]:
    """Validate the invocation input; as_of_date defaults to today (UTC)."""
    if tenant_id is None or (isinstance(tenant_id, str) and not tenant_id.strip()):
        raise InvalidRunRequest("tenant_id required")
    try:
        tenant_uuid = tenant_id if isinstance(tenant_id, uuid.UUID) else uuid.UUID(str(tenant_id).strip())
    except ValueError as exc:
        raise InvalidRunRequest(f"invalid tenant_id: {tenant_id}") from exc

    if as_of_date is None or as_of_date == "":
        return tenant_uuid, datetime.now(timezone.utc).date()
    if isinstance(as_of_date, datetime):
        return tenant_uuid, as_of_date.date()
    if isinstance(as_of_date, date):
        return tenant_uuid, as_of_date
    try:
        return tenant_uuid, date.fromisoformat(str(as_of_date))
    except ValueError as exc:
        raise InvalidRunRequest(f"invalid as_of_date: {as_of_date}") from exc


async def compute_kpis(inputs: LoadedInputs, default_unit_cost: float) -> KpiResults:
    """Run the four calculators over loaded inputs."""
    stores = classify_stores(inputs.stores)
    unit_cost = UnitCostLookup.from_frame(inputs.style_costs, default_unit_cost)
    size_index = SizeIndex.from_frame(inputs.size_mapping)

    distortion, completeness, network_gap = await asyncio.gather(
        asyncio.to_thread(calculate_distortion, inputs.positions, inputs.demand, stores, unit_cost),
        asyncio.to_thread(calculate_completeness, inputs.positions, stores, size_index),
        asyncio.to_thread(calculate_network_gap, inputs.positions, inputs.demand, stores, unit_cost),
    )
    curve_health = calculate_curve_health(completeness)

    return KpiResults(
        distortion=distortion,
        completeness=completeness,
        curve_health=curve_health,
        network_gap=network_gap,
        cost_basis=unit_cost.cost_basis,
    )


class InventoryKpiEngine:
    """Compute and persist the KPI snapshots for one tenant and day."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings | None = None,
        lock_factory: Callable[[str, date], contextlib.AbstractAsyncContextManager] | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.lock_factory = lock_factory

    async def run(self, tenant_id: Any, as_of_date: Any = None, trigger: str = "manual") -> KpiRunSummary:
        started = time.monotonic()
        try:
            tenant_uuid, run_date = parse_run_request(tenant_id, as_of_date)
        except InvalidRunRequest as exc:
            logger.warning("kpi_engine.invalid_request", tenant_id=str(tenant_id), error=str(exc))
            return KpiRunSummary(
                success=False, date=_date_or_none(as_of_date), errors=[str(exc)], failure="invalid_request"
            )

        log = logger.bind(tenant_id=str(tenant_uuid), as_of_date=run_date.isoformat(), trigger=trigger)
        lock = self.lock_factory(str(tenant_uuid), run_date) if self.lock_factory else contextlib.nullcontext()
        run_id: uuid.UUID | None = None

        try:
            async with lock:
                run_id = await self._start_run(tenant_uuid, run_date, trigger)
                log = log.bind(run_id=str(run_id))
                log.info("kpi_engine.started")
                summary = await self._execute(tenant_uuid, run_date, started, log)
        except KpiEngineError as exc:
            log.warning("kpi_engine.rejected", error=str(exc))
            summary = KpiRunSummary(
                success=False, date=run_date.isoformat(), errors=[str(exc)], failure=_failure_kind(exc)
            )
        except Exception as exc:  # noqa: BLE001
            log.error("kpi_engine.failed", error=str(exc), exc_info=True)
            await _safe_rollback(self.db)
            summary = KpiRunSummary(success=False, date=run_date.isoformat(), errors=[str(exc)], failure="error")

        summary.run_id = str(run_id) if run_id else None
        if run_id is not None:
            await self._finish_run(run_id, summary, time.monotonic() - started, log)
        return summary

    async def _execute(self, tenant_uuid: uuid.UUID, run_date: date, started: float, log) -> KpiRunSummary:
        timeout = float(self.settings.kpi_job_timeout_seconds)
        try:
            inputs, results = await asyncio.wait_for(self._load_and_compute(tenant_uuid), timeout=timeout)
        except asyncio.TimeoutError:
            log.error("kpi_engine.timeout", timeout_seconds=timeout)
            await _safe_rollback(self.db)
            return KpiRunSummary(
                success=False,
                date=run_date.isoformat(),
                errors=[f"timed out after {timeout:g}s before writing snapshots"],
                failure="timeout",
            )

        written = await write_snapshots(
            self.db,
            tenant_uuid,
            run_date,
            results.by_table(),
            batch_size=self.settings.kpi_insert_batch_size,
            deadline=started + timeout,
        )

        summary = KpiRunSummary(
            success=True,
            date=run_date.isoformat(),
            idi_rows=written.inserted["idi"],
            scs_rows=written.inserted["scs"],
            chi_rows=written.inserted["chi"],
            gap_rows=written.inserted["gap"],
            errors=written.errors,
            degraded=inputs.degraded,
            truncated_inputs=list(inputs.truncated),
            cost_basis=results.cost_basis,
        )
        log.info("kpi_engine.completed", **{k: v for k, v in summary.to_dict().items() if k != "date"})
        return summary

    async def _load_and_compute(self, tenant_uuid: uuid.UUID) -> tuple[LoadedInputs, KpiResults]:
        inputs = await load_inputs(self.db, tenant_uuid, page_size=self.settings.kpi_page_size)
        results = await compute_kpis(inputs, self.settings.kpi_default_unit_cost)
        return inputs, results

    async def _start_run(self, tenant_uuid: uuid.UUID, run_date: date, trigger: str) -> uuid.UUID:
        if await self.db.get(Tenant, tenant_uuid) is None:
            raise InvalidRunRequest(f"unknown tenant_id: {tenant_uuid}")
        run_id = uuid.uuid4()
        self.db.add(
            KpiEngineRun(run_id=run_id, tenant_id=tenant_uuid, as_of_date=run_date, trigger=trigger, status="running")
        )
        await self.db.commit()
        return run_id

    async def _finish_run(self, run_id: uuid.UUID, summary: KpiRunSummary, elapsed: float, log) -> None:
        if not summary.success:
            status = "failed"
        elif summary.errors:
            status = "partial"
        else:
            status = "success"
        try:
            await self.db.execute(
                update(KpiEngineRun)
                .where(KpiEngineRun.run_id == run_id)
                .values(
                    status=status,
                    idi_rows=summary.idi_rows,
                    scs_rows=summary.scs_rows,
                    chi_rows=summary.chi_rows,
                    gap_rows=summary.gap_rows,
                    degraded=summary.degraded,
                    truncated_inputs=summary.truncated_inputs,
                    errors=summary.errors,
                    cost_basis=summary.cost_basis,
                    completed_at=datetime.utcnow(),
                    duration_seconds=round(elapsed, 3),
                )
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await _safe_rollback(self.db)
            log.error("kpi_engine.audit_failed", error=str(exc))


async def run_inventory_kpi_engine(
    db: AsyncSession,
    tenant_id: Any,
    as_of_date: Any = None,
    trigger: str = "manual",
    settings: Settings | None = None,
    lock_factory: Callable[[str, date], contextlib.AbstractAsyncContextManager] | None = None,
) -> KpiRunSummary:
    """Convenience wrapper: one engine run with the given session."""
    engine = InventoryKpiEngine(db, settings=settings, lock_factory=lock_factory)
    return await engine.run(tenant_id, as_of_date=as_of_date, trigger=trigger)


def _date_or_none(value: Any) -> str | None:
    if isinstance(value, date):
        return value.isoformat()
    return str(value) if value else None


async def _safe_rollback(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except SQLAlchemyError as exc:
        logger.warning("kpi_engine.rollback_failed", error=str(exc))


def _failure_kind(exc: KpiEngineError) -> str:
    if isinstance(exc, SnapshotLockError):
        return "locked"
    if isinstance(exc, InvalidRunRequest):
        return "invalid_request"
    return "error"

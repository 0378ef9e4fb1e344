"""
Inventory KPI Router — Trigger engine runs and read KPI snapshots.

Endpoints:
  POST /api/v1/inventory-kpi/run            run the engine for a tenant/day
  GET  /api/v1/inventory-kpi/summary        per-table counts and distributions
  GET  /api/v1/inventory-kpi/distortion     IDI snapshot
  GET  /api/v1/inventory-kpi/completeness   SCS snapshot
  GET  /api/v1/inventory-kpi/curve-health   CHI snapshot
  GET  /api/v1/inventory-kpi/network-gap    Network Gap snapshot
  GET  /api/v1/inventory-kpi/runs           engine run history
"""

from datetime import date, datetime
from functools import partial
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_tenant_id, get_db, get_tenant_db
from core.config import get_settings
from db.models import CurveHealth, InventoryDistortion, KpiEngineRun, NetworkGap, SizeCompleteness

router = APIRouter(prefix="/api/v1/inventory-kpi", tags=["inventory-kpi"])

FAILURE_STATUS_CODES = {
    "invalid_request": status.HTTP_400_BAD_REQUEST,
    "locked": status.HTTP_409_CONFLICT,
    "timeout": status.HTTP_504_GATEWAY_TIMEOUT,
    "error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# ─── Schemas ────────────────────────────────────────────────────────────────


class RunKpiRequest(BaseModel):
    tenant_id: str | None = None
    as_of_date: date | None = None


class RunKpiResponse(BaseModel):
    success: bool
    date: str | None
    idi_rows: int = 0
    scs_rows: int = 0
    chi_rows: int = 0
    gap_rows: int = 0
    errors: list[str] | None = None
    degraded: bool = False
    truncated_inputs: list[str] = []
    cost_basis: str | None = None
    run_id: str | None = None


class DistortionResponse(BaseModel):
    style_id: str
    as_of_date: date
    distortion_score: float
    overstock_locations: list[str]
    understock_locations: list[str]
    locked_cash_estimate: float

    model_config = {"from_attributes": True}


class CompletenessResponse(BaseModel):
    store_id: UUID
    style_id: str
    as_of_date: date
    sizes_present: int
    sizes_total: int
    score: float
    missing_sizes: list[str]
    status: str

    model_config = {"from_attributes": True}


class CurveHealthResponse(BaseModel):
    style_id: str
    as_of_date: date
    curve_health_index: float
    risk_band: str

    model_config = {"from_attributes": True}


class NetworkGapResponse(BaseModel):
    style_id: str
    as_of_date: date
    reallocatable_units: int
    true_shortage_units: int
    net_gap_units: int
    revenue_at_risk: float

    model_config = {"from_attributes": True}


class EngineRunResponse(BaseModel):
    run_id: UUID
    as_of_date: date
    trigger: str
    status: str
    idi_rows: int
    scs_rows: int
    chi_rows: int
    gap_rows: int
    degraded: bool
    truncated_inputs: list[str]
    errors: list[str]
    cost_basis: str | None
    started_at: datetime
    completed_at: datetime | None
    duration_seconds: float | None

    model_config = {"from_attributes": True}


class KpiSnapshotSummary(BaseModel):
    as_of_date: date | None
    distortion_styles: int
    locked_cash_estimate: float
    completeness_pairs: int
    completeness_status: dict[str, int]
    curve_health_styles: int
    risk_bands: dict[str, int]
    network_gap_styles: int
    revenue_at_risk: float


# ─── Helpers ─────────────────────────────────────────────────────────────────


def get_kpi_lock_factory():
    """Redis run lock used by API-triggered runs (None when disabled)."""
    settings = get_settings()
    if not settings.kpi_run_lock_enabled:
        return None
    from kpi.locking import tenant_date_lock

    return partial(
        tenant_date_lock,
        settings.redis_url,
        ttl_seconds=settings.kpi_run_lock_ttl_seconds,
        wait_seconds=settings.kpi_run_lock_wait_seconds,
    )


async def _resolve_snapshot_date(db: AsyncSession, model, tenant_id: str, as_of_date: date | None) -> date | None:
    """Requested date, or the latest snapshot date of the table for this tenant."""
    if as_of_date is not None:
        return as_of_date
    result = await db.execute(select(func.max(model.as_of_date)).where(model.tenant_id == UUID(tenant_id)))
    return result.scalar_one_or_none()


async def _snapshot_query(db: AsyncSession, model, tenant_id: str, as_of_date: date | None, *filters):
    """Select a table's rows for one snapshot day; None when the tenant has no snapshot."""
    snapshot_date = await _resolve_snapshot_date(db, model, tenant_id, as_of_date)
    if snapshot_date is None:
        return None
    return select(model).where(model.tenant_id == UUID(tenant_id), model.as_of_date == snapshot_date, *filters)


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/run", response_model=RunKpiResponse)
async def run_inventory_kpis(
    body: RunKpiRequest,
    current_tenant_id: str = Depends(get_current_tenant_id),
    db: AsyncSession = Depends(get_db),
    lock_factory=Depends(get_kpi_lock_factory),
):
    """Run the KPI engine for one tenant/day and return the row counts."""
    from kpi.engine import run_inventory_kpi_engine

    if body.tenant_id and body.tenant_id.strip().lower() != current_tenant_id.lower():
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Tenant mismatch")

    summary = await run_inventory_kpi_engine(
        db,
        body.tenant_id,
        as_of_date=body.as_of_date,
        trigger="api",
        lock_factory=lock_factory,
    )
    if not summary.success:
        return JSONResponse(
            status_code=FAILURE_STATUS_CODES.get(summary.failure, status.HTTP_500_INTERNAL_SERVER_ERROR),
            content=summary.to_dict(),
        )
    return summary.to_dict()


@router.get("/summary", response_model=KpiSnapshotSummary)
async def get_kpi_summary(
    as_of_date: date | None = None,
    tenant_id: str = Depends(get_current_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Counts and distributions across the four KPI tables for one day."""
    tenant_uuid = UUID(tenant_id)
    snapshot_date = await _resolve_snapshot_date(db, SizeCompleteness, tenant_id, as_of_date)
    if snapshot_date is None:
        snapshot_date = await _resolve_snapshot_date(db, InventoryDistortion, tenant_id, as_of_date)

    def _scope(model):
        return (model.tenant_id == tenant_uuid, model.as_of_date == snapshot_date)

    idi = (
        await db.execute(
            select(func.count(), func.coalesce(func.sum(InventoryDistortion.locked_cash_estimate), 0.0)).where(
                *_scope(InventoryDistortion)
            )
        )
    ).one()
    scs_rows = (
        await db.execute(
            select(SizeCompleteness.status, func.count())
            .where(*_scope(SizeCompleteness))
            .group_by(SizeCompleteness.status)
        )
    ).all()
    chi_rows = (
        await db.execute(
            select(CurveHealth.risk_band, func.count()).where(*_scope(CurveHealth)).group_by(CurveHealth.risk_band)
        )
    ).all()
    gap = (
        await db.execute(
            select(func.count(), func.coalesce(func.sum(NetworkGap.revenue_at_risk), 0.0)).where(*_scope(NetworkGap))
        )
    ).one()

    completeness_status = {row[0]: row[1] for row in scs_rows}
    risk_bands = {row[0]: row[1] for row in chi_rows}
    return KpiSnapshotSummary(
        as_of_date=snapshot_date,
        distortion_styles=idi[0],
        locked_cash_estimate=float(idi[1]),
        completeness_pairs=sum(completeness_status.values()),
        completeness_status=completeness_status,
        curve_health_styles=sum(risk_bands.values()),
        risk_bands=risk_bands,
        network_gap_styles=gap[0],
        revenue_at_risk=float(gap[1]),
    )


@router.get("/distortion", response_model=list[DistortionResponse])
async def list_distortion(
    as_of_date: date | None = None,
    style_id: str | None = None,
    min_score: float | None = Query(None, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    tenant_id: str = Depends(get_current_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """IDI snapshot, most distorted styles first."""
    filters = []
    if style_id:
        filters.append(InventoryDistortion.style_id == style_id)
    if min_score is not None:
        filters.append(InventoryDistortion.distortion_score >= min_score)
    query = await _snapshot_query(db, InventoryDistortion, tenant_id, as_of_date, *filters)
    if query is None:
        return []
    query = query.order_by(InventoryDistortion.distortion_score.desc(), InventoryDistortion.style_id)
    result = await db.execute(query.limit(limit))
    return result.scalars().all()


@router.get("/completeness", response_model=list[CompletenessResponse])
async def list_completeness(
    as_of_date: date | None = None,
    style_id: str | None = None,
    store_id: UUID | None = None,
    status_filter: str | None = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    tenant_id: str = Depends(get_current_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """SCS snapshot, lowest scores first."""
    filters = []
    if style_id:
        filters.append(SizeCompleteness.style_id == style_id)
    if store_id:
        filters.append(SizeCompleteness.store_id == store_id)
    if status_filter:
        filters.append(SizeCompleteness.status == status_filter.upper())
    query = await _snapshot_query(db, SizeCompleteness, tenant_id, as_of_date, *filters)
    if query is None:
        return []
    result = await db.execute(query.order_by(SizeCompleteness.score, SizeCompleteness.style_id).limit(limit))
    return result.scalars().all()


@router.get("/curve-health", response_model=list[CurveHealthResponse])
async def list_curve_health(
    as_of_date: date | None = None,
    risk_band: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
    tenant_id: str = Depends(get_current_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """CHI snapshot, least healthy curves first."""
    filters = []
    if risk_band:
        filters.append(CurveHealth.risk_band == risk_band.upper())
    query = await _snapshot_query(db, CurveHealth, tenant_id, as_of_date, *filters)
    if query is None:
        return []
    result = await db.execute(query.order_by(CurveHealth.curve_health_index, CurveHealth.style_id).limit(limit))
    return result.scalars().all()


@router.get("/network-gap", response_model=list[NetworkGapResponse])
async def list_network_gap(
    as_of_date: date | None = None,
    limit: int = Query(100, ge=1, le=1000),
    tenant_id: str = Depends(get_current_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Network Gap snapshot, largest revenue at risk first."""
    query = await _snapshot_query(db, NetworkGap, tenant_id, as_of_date)
    if query is None:
        return []
    query = query.order_by(NetworkGap.revenue_at_risk.desc(), NetworkGap.net_gap_units.desc(), NetworkGap.style_id)
    result = await db.execute(query.limit(limit))
    return result.scalars().all()


@router.get("/runs", response_model=list[EngineRunResponse])
async def list_engine_runs(
    as_of_date: date | None = None,
    limit: int = Query(20, ge=1, le=100),
    tenant_id: str = Depends(get_current_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """Most recent engine runs for the current tenant."""
    query = select(KpiEngineRun).where(KpiEngineRun.tenant_id == UUID(tenant_id))
    if as_of_date:
        query = query.where(KpiEngineRun.as_of_date == as_of_date)
    query = query.order_by(KpiEngineRun.started_at.desc()).limit(limit)
    result = await db.execute(query)
    return result.scalars().all()

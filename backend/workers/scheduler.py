"""
KPI Fan-out — Queue one per-tenant KPI task for every tenant on the nightly beat.

The beat entry runs once per night; this task resolves the tenants that
should get a snapshot and queues the tenant-scoped task for each of them.
The business date is pinned here, at dispatch time, so every tenant in one
fan-out writes the same as_of_date even when its task is picked up after
midnight UTC.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()

# Tenants whose snapshots are computed nightly
SNAPSHOT_TENANT_STATUSES = ("active", "trial")


@celery_app.task(
    name="workers.scheduler.dispatch_active_tenants",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_active_tenants(
    self,
    task_name: str,
    task_kwargs: dict | None = None,
    statuses: list[str] | None = None,
):
    """
    Queue `task_name` once per tenant in `statuses` (default: active, trial).

    Each queued task gets `tenant_id` plus `task_kwargs`; `as_of_date` is
    filled with today's UTC date unless the caller pinned one.

    Returns:
        dict with the pinned as_of_date, the tenants queued and the task ids
    """
    from core.config import get_settings
    from db.models import Tenant

    if not task_name.startswith("workers."):
        logger.warning("kpi_fanout.rejected", task_name=task_name)
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    fanout_id = self.request.id or "manual"
    dispatched_at = datetime.now(timezone.utc)
    base_kwargs = dict(task_kwargs or {})
    base_kwargs.setdefault("as_of_date", dispatched_at.date().isoformat())
    tenant_statuses = tuple(statuses or SNAPSHOT_TENANT_STATUSES)

    async def _tenants_to_snapshot() -> list[str]:
        engine = create_async_engine(get_settings().database_url)
        try:
            async with async_sessionmaker(engine, class_=AsyncSession)() as db:
                result = await db.execute(
                    select(Tenant.tenant_id).where(Tenant.status.in_(tenant_statuses)).order_by(Tenant.created_at)
                )
                return [str(tenant_id) for tenant_id in result.scalars().all()]
        finally:
            await engine.dispose()

    try:
        tenant_ids = asyncio.run(_tenants_to_snapshot())
    except Exception as exc:  # noqa: BLE001
        logger.error("kpi_fanout.tenant_lookup_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    queued = {}
    for tenant_id in tenant_ids:
        async_result = celery_app.send_task(task_name, kwargs={**base_kwargs, "tenant_id": tenant_id})
        queued[tenant_id] = getattr(async_result, "id", None)

    summary = {
        "status": "success",
        "task_name": task_name,
        "as_of_date": base_kwargs["as_of_date"],
        "tenant_statuses": list(tenant_statuses),
        "tenants_queued": len(queued),
        "queued_task_ids": queued,
        "dispatched_at": dispatched_at.isoformat(),
        "fanout_id": fanout_id,
    }
    logger.info(
        "kpi_fanout.completed",
        task_name=task_name,
        as_of_date=summary["as_of_date"],
        tenants_queued=summary["tenants_queued"],
        fanout_id=fanout_id,
    )
    return summary

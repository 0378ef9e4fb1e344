"""
Inventory KPI Worker — Daily IDI / SCS / CHI / Network Gap snapshots.

Runs after the nightly inventory and demand sync so the engine reads the
latest positions. One task per tenant, fanned out by the scheduler.

Schedule: crontab(hour=1, minute=30), nightly
Queue: kpi
"""

import asyncio
from functools import partial

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.inventory_kpi.compute_inventory_kpis",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def compute_inventory_kpis(self, tenant_id: str, as_of_date: str | None = None, trigger: str = "manual"):
    """
    Compute and persist the inventory KPI snapshots for one tenant/day.

    Workflow:
      1. Take the (tenant, date) Redis run lock
      2. Load inputs, compute IDI / SCS / CHI / Network Gap
      3. Replace the day's snapshot in each KPI table
      4. Return the run summary

    Unexpected engine errors raise and are retried (max 2); invalid requests,
    held locks and timeouts return the unsuccessful summary.

    Args:
        tenant_id: Tenant to compute
        as_of_date: ISO date; defaults to today (UTC)
        trigger: "scheduled" from beat, "manual" otherwise
    """
    run_id = self.request.id or "manual"
    logger.info("inventory_kpi.started", tenant_id=tenant_id, as_of_date=as_of_date, run_id=run_id)

    async def _compute():
        from core.config import get_settings
        from kpi.engine import run_inventory_kpi_engine
        from kpi.errors import KpiRunFailed
        from kpi.locking import tenant_date_lock

        settings = get_settings()
        lock_factory = None
        if settings.kpi_run_lock_enabled:
            lock_factory = partial(
                tenant_date_lock,
                settings.redis_url,
                ttl_seconds=settings.kpi_run_lock_ttl_seconds,
                wait_seconds=settings.kpi_run_lock_wait_seconds,
            )

        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession)
            async with async_session() as db:
                summary = await run_inventory_kpi_engine(
                    db,
                    tenant_id,
                    as_of_date=as_of_date,
                    trigger=trigger,
                    settings=settings,
                    lock_factory=lock_factory,
                )
        finally:
            await engine.dispose()

        # Only unexpected errors (DB outage) are retried
        if summary.failure == "error":
            raise KpiRunFailed(tenant_id, summary.errors)

        result = summary.to_dict()
        result["celery_task_id"] = run_id
        if summary.success:
            logger.info("inventory_kpi.completed", tenant_id=tenant_id, **summary.to_dict())
        else:
            logger.error("inventory_kpi.unsuccessful", tenant_id=tenant_id, errors=summary.errors)
        return result

    try:
        return asyncio.run(_compute())
    except Exception as exc:
        logger.error("inventory_kpi.failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

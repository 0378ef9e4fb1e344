"""Redis lock serializing KPI engine runs per (tenant, as_of_date)."""

from contextlib import asynccontextmanager
from datetime import date

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

from kpi.errors import SnapshotLockError

logger = structlog.get_logger()


def run_lock_name(tenant_id: str, as_of_date: date) -> str:
    return f"kpi-engine:{tenant_id}:{as_of_date.isoformat()}"


@asynccontextmanager
async def tenant_date_lock(
    redis_url: str,
    tenant_id: str,
    as_of_date: date,
    ttl_seconds: int = 900,
    wait_seconds: float = 5.0,
):
    """
    Hold the run lock for the duration of the block.

    Raises SnapshotLockError if another run keeps the lock past wait_seconds.
    The TTL bounds how long a crashed worker can block the next run.
    """
    redis = aioredis.from_url(redis_url)
    lock = redis.lock(run_lock_name(tenant_id, as_of_date), timeout=ttl_seconds, blocking_timeout=wait_seconds)
    try:
        if not await lock.acquire():
            raise SnapshotLockError(tenant_id, as_of_date.isoformat())
        logger.info("kpi_lock.acquired", tenant_id=tenant_id, as_of_date=as_of_date.isoformat())
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # TTL expired mid-run; another run may already own the key
                logger.warning("kpi_lock.release_failed", tenant_id=tenant_id, as_of_date=as_of_date.isoformat())
    finally:
        await redis.aclose()

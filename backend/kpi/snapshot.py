"""
KPI Snapshot Writer — replace the (tenant, as_of_date) snapshot per KPI table.

For every KPI table with freshly computed records:
  1. take a transaction-scoped advisory lock on (table, tenant, date)  [PostgreSQL]
  2. delete the table's existing rows for (tenant, as_of_date)
  3. insert the new rows in fixed-size batches
  4. commit

Each table is its own transaction. A failure rolls that table back (the
previous snapshot stays intact), is recorded in the error list, and the
remaining tables are still written. Tables with no computed records are
left untouched.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date

import structlog
from sqlalchemy import delete, insert, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import CurveHealth, InventoryDistortion, NetworkGap, SizeCompleteness

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 500

# summary key → snapshot model, in write order
SNAPSHOT_TABLES = {
    "idi": InventoryDistortion,
    "scs": SizeCompleteness,
    "chi": CurveHealth,
    "gap": NetworkGap,
}


@dataclass
class SnapshotWriteResult:
    inserted: dict[str, int] = field(default_factory=lambda: {key: 0 for key in SNAPSHOT_TABLES})
    errors: list[str] = field(default_factory=list)


def _error_message(table: str, exc: Exception) -> str:
    detail = getattr(exc, "orig", None) or exc
    return f"{table}: {detail}"


async def _lock_snapshot(db: AsyncSession, table: str, tenant_id: uuid.UUID, as_of_date: date) -> None:
    """Serialize concurrent writers of the same snapshot (released on commit/rollback)."""
    if db.get_bind().dialect.name != "postgresql":
        return
    await db.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
        {"key": f"{table}:{tenant_id}:{as_of_date.isoformat()}"},
    )


async def replace_snapshot(
    db: AsyncSession,
    model,
    tenant_id: uuid.UUID,
    as_of_date: date,
    records: list,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> int:
    """Delete + batch-insert one table's snapshot inside a single transaction."""
    rows = [{**asdict(record), "tenant_id": tenant_id, "as_of_date": as_of_date} for record in records]
    table = model.__tablename__
    try:
        await _lock_snapshot(db, table, tenant_id, as_of_date)
        deleted = await db.execute(
            delete(model).where(model.tenant_id == tenant_id, model.as_of_date == as_of_date)
        )
        for start in range(0, len(rows), batch_size):
            await db.execute(insert(model), rows[start : start + batch_size])
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise

    logger.info(
        "kpi_snapshot.replaced",
        table=table,
        tenant_id=str(tenant_id),
        as_of_date=as_of_date.isoformat(),
        deleted=deleted.rowcount,
        inserted=len(rows),
    )
    return len(rows)


async def write_snapshots(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    as_of_date: date,
    records: dict[str, list],
    batch_size: int = DEFAULT_BATCH_SIZE,
    deadline: float | None = None,
) -> SnapshotWriteResult:
    """
    Write every KPI table independently.

    Args:
        records: summary key ("idi", "scs", "chi", "gap") → computed records
        deadline: time.monotonic() value after which no new table is started

    Returns:
        SnapshotWriteResult with inserted counts per key and error messages.
    """
    result = SnapshotWriteResult()
    for key, model in SNAPSHOT_TABLES.items():
        table_records = records.get(key) or []
        if not table_records:
            logger.info("kpi_snapshot.nothing_to_write", table=model.__tablename__, tenant_id=str(tenant_id))
            continue
        if deadline is not None and time.monotonic() > deadline:
            result.errors.append(f"{model.__tablename__}: skipped, job deadline exceeded")
            logger.warning("kpi_snapshot.deadline_skip", table=model.__tablename__, tenant_id=str(tenant_id))
            continue

        try:
            result.inserted[key] = await replace_snapshot(
                db, model, tenant_id, as_of_date, table_records, batch_size=batch_size
            )
        except SQLAlchemyError as exc:
            result.errors.append(_error_message(model.__tablename__, exc))
            logger.error(
                "kpi_snapshot.write_failed",
                table=model.__tablename__,
                tenant_id=str(tenant_id),
                as_of_date=as_of_date.isoformat(),
                error=str(exc),
            )

    return result

"""
KPI Data Loader — Paginated full-table fetch of the engine inputs.

Reads every row of the tenant's input relations in fixed-size pages:
  - inv_state_positions  (store x sku inventory)
  - inv_state_demand     (store x style demand)
  - inv_sku_fc_mapping   (sku <-> style <-> size)
  - inv_stores           (store master)
  - inv_style_costs      (optional per-style unit cost)

Paging stops when a page returns fewer rows than the page size. A failed
page fetch is logged and ends paging for that relation only; the rows read
so far are kept and the relation is reported in LoadedInputs.truncated so
callers can flag the run as degraded. No retries.
"""

import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import pandas as pd
import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import DemandSignal, InventoryPosition, InvStore, SizeMapping, StyleUnitCost

logger = structlog.get_logger()

DEFAULT_PAGE_SIZE = 1000

# relation name → (model, columns read)
INPUT_RELATIONS = {
    "positions": (
        InventoryPosition,
        ("store_id", "style_id", "sku", "on_hand", "reserved", "in_transit", "safety_stock"),
    ),
    "demand": (DemandSignal, ("store_id", "style_id", "avg_daily_sales", "sales_velocity")),
    "size_mapping": (SizeMapping, ("style_id", "sku", "size_code")),
    "stores": (InvStore, ("id", "store_name", "store_code", "tier", "region", "location_type", "is_active")),
    "style_costs": (StyleUnitCost, ("style_id", "unit_cost")),
}


@dataclass
class LoadedInputs:
    """All input relations for one tenant, one DataFrame per relation."""

    positions: pd.DataFrame
    demand: pd.DataFrame
    size_mapping: pd.DataFrame
    stores: pd.DataFrame
    style_costs: pd.DataFrame
    truncated: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.truncated)


@dataclass
class _PageCursor:
    rows_read: int = 0
    pages_read: int = 0
    failed: bool = False


async def iter_pages(
    db: AsyncSession,
    model,
    columns: tuple[str, ...],
    tenant_id: uuid.UUID,
    page_size: int = DEFAULT_PAGE_SIZE,
    cursor: _PageCursor | None = None,
) -> AsyncIterator[list[dict]]:
    """
    Yield pages of rows (as dicts) for one tenant-scoped relation.

    Ordered by primary key so offsets are stable between pages. On a fetch
    error the iterator logs, marks the cursor failed, and stops.
    """
    cursor = cursor or _PageCursor()
    pk = model.__mapper__.primary_key[0]
    stmt = select(*(getattr(model, name) for name in columns)).where(model.tenant_id == tenant_id).order_by(pk)

    offset = 0
    while True:
        try:
            result = await db.execute(stmt.limit(page_size).offset(offset))
            page = [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as exc:
            cursor.failed = True
            logger.error(
                "kpi_loader.page_failed",
                table=model.__tablename__,
                tenant_id=str(tenant_id),
                offset=offset,
                rows_kept=cursor.rows_read,
                error=str(exc),
            )
            # Aborted transactions must be cleared before the next relation is read
            await db.rollback()
            return

        cursor.pages_read += 1
        cursor.rows_read += len(page)
        if page:
            yield page
        if len(page) < page_size:
            return
        offset += page_size


async def load_relation(
    db: AsyncSession,
    relation: str,
    tenant_id: uuid.UUID,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> tuple[pd.DataFrame, bool]:
    """
    Fold every page of a relation into a DataFrame.

    Returns (frame, truncated).
    """
    model, columns = INPUT_RELATIONS[relation]
    cursor = _PageCursor()
    rows: list[dict] = []
    async for page in iter_pages(db, model, columns, tenant_id, page_size=page_size, cursor=cursor):
        rows.extend(page)

    logger.info(
        "kpi_loader.relation_loaded",
        relation=relation,
        tenant_id=str(tenant_id),
        rows=cursor.rows_read,
        pages=cursor.pages_read,
        truncated=cursor.failed,
    )
    return pd.DataFrame(rows, columns=list(columns)), cursor.failed


async def load_inputs(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> LoadedInputs:
    """Load all engine inputs for a tenant."""
    frames: dict[str, pd.DataFrame] = {}
    truncated: list[str] = []
    for relation in INPUT_RELATIONS:
        frame, was_truncated = await load_relation(db, relation, tenant_id, page_size=page_size)
        frames[relation] = frame
        if was_truncated:
            truncated.append(relation)

    if truncated:
        logger.warning("kpi_loader.degraded", tenant_id=str(tenant_id), truncated=truncated)

    return LoadedInputs(truncated=truncated, **frames)

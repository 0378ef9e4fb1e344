"""
Network Gap — network-wide supply vs 28-day projected demand per style.

  total_stock        = Σ on_hand at every active store (warehouses included)
  projected_demand   = Σ avg_daily_sales × 28 at retail stores
  reallocatable      = floor(total_stock × 0.7)
  true_shortage      = max(0, ceil(projected_demand) − total_stock)
  net_gap            = max(0, ceil(projected_demand) − reallocatable)
  revenue_at_risk    = true_shortage × unit cost

Supply counts warehouse stock because it can be pushed to stores; demand is
only observed at retail. Styles with no stock and no demand are skipped, and
styles fully covered (no shortage, no gap) produce no record.
"""

import math
from collections.abc import Callable
from dataclasses import dataclass

import pandas as pd
import structlog

from kpi.stores import StoreClasses

logger = structlog.get_logger()

DEMAND_HORIZON_DAYS = 28
REALLOCATABLE_SHARE = 0.7


@dataclass
class NetworkGapRecord:
    style_id: str
    reallocatable_units: int
    true_shortage_units: int
    net_gap_units: int
    revenue_at_risk: float


def calculate_network_gap(
    positions: pd.DataFrame,
    demand: pd.DataFrame,
    stores: StoreClasses,
    unit_cost: Callable[[str], float],
) -> list[NetworkGapRecord]:
    """Compute NetworkGapRecords for styles whose projected demand exceeds reallocatable stock."""
    supply = positions[positions["store_id"].isin(stores.active)].groupby("style_id")["on_hand"].sum()
    retail_demand = demand[demand["store_id"].isin(stores.retail)]
    projected = (
        pd.to_numeric(retail_demand["avg_daily_sales"], errors="coerce").fillna(0.0) * DEMAND_HORIZON_DAYS
    ).groupby(retail_demand["style_id"]).sum()

    records: list[NetworkGapRecord] = []
    for style_id in sorted(set(supply.index) | set(projected.index)):
        total_stock = int(supply.get(style_id, 0))
        demand_28d = float(projected.get(style_id, 0.0))
        if total_stock == 0 and demand_28d == 0:
            continue

        demand_units = math.ceil(demand_28d)
        reallocatable = math.floor(total_stock * REALLOCATABLE_SHARE)
        true_shortage = max(0, demand_units - total_stock)
        net_gap = max(0, demand_units - reallocatable)
        if true_shortage == 0 and net_gap == 0:
            continue

        records.append(
            NetworkGapRecord(
                style_id=str(style_id),
                reallocatable_units=reallocatable,
                true_shortage_units=true_shortage,
                net_gap_units=net_gap,
                revenue_at_risk=round(true_shortage * unit_cost(str(style_id)), 2),
            )
        )

    logger.info("kpi_network_gap.computed", styles=len(records))
    return records

"""
Inventory Distortion Index (IDI) — cross-store spread of days-of-cover.

For each style, days-of-cover (DOC) is computed per retail store that holds
a position in the style:

  DOC = min(on_hand / velocity, 999)  if velocity > 0
      = 999                              if velocity == 0 and on_hand > 0  (no sell-through)
      = 0                                otherwise

  distortion_score = population std dev of DOC across stores (2 decimals)
  overstock        = stores with DOC > 1.5 × mean
  understock       = stores with DOC < 0.5 × mean and DOC < 14
  locked cash      = Σ on_hand at overstock stores × unit cost

Styles stocked at fewer than two retail stores have no distortion and are
skipped.
"""

import math
from collections.abc import Callable
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
import structlog

from kpi.stores import StoreClasses

logger = structlog.get_logger()

NO_SALES_DOC = 999.0
MIN_STORES = 2
OVERSTOCK_RATIO = 1.5
UNDERSTOCK_RATIO = 0.5
UNDERSTOCK_MAX_DOC = 14.0


@dataclass
class DistortionRecord:
    style_id: str
    distortion_score: float
    overstock_locations: list[str] = field(default_factory=list)
    understock_locations: list[str] = field(default_factory=list)
    locked_cash_estimate: float = 0.0


def days_of_cover(on_hand: float, velocity: float) -> float:
    if velocity > 0:
        return min(on_hand / velocity, NO_SALES_DOC)
    if on_hand > 0:
        return NO_SALES_DOC
    return 0.0


def store_style_cover(positions: pd.DataFrame, demand: pd.DataFrame, retail_ids: frozenset) -> pd.DataFrame:
    """On-hand, velocity and DOC per (style, retail store)."""
    retail_positions = positions[positions["store_id"].isin(retail_ids)]
    if retail_positions.empty:
        return pd.DataFrame(columns=["style_id", "store_id", "on_hand", "velocity", "doc"])

    on_hand = retail_positions.groupby(["style_id", "store_id"], sort=False)["on_hand"].sum().reset_index()
    velocity = (
        demand.groupby(["style_id", "store_id"], sort=False)["sales_velocity"]
        .sum()
        .rename("velocity")
        .reset_index()
    )
    cover = on_hand.merge(velocity, on=["style_id", "store_id"], how="left")
    cover["velocity"] = pd.to_numeric(cover["velocity"], errors="coerce").fillna(0.0)
    cover["doc"] = [days_of_cover(oh, vel) for oh, vel in zip(cover["on_hand"], cover["velocity"])]
    return cover


def calculate_distortion(
    positions: pd.DataFrame,
    demand: pd.DataFrame,
    stores: StoreClasses,
    unit_cost: Callable[[str], float],
) -> list[DistortionRecord]:
    """Compute one DistortionRecord per style stocked at two or more retail stores."""
    cover = store_style_cover(positions, demand, stores.retail)
    records: list[DistortionRecord] = []
    skipped = 0

    for style_id, group in cover.groupby("style_id", sort=True):
        if len(group) < MIN_STORES:
            skipped += 1
            continue

        group = group.sort_values("store_id", key=lambda ids: ids.astype(str))
        docs = group["doc"].to_numpy(dtype=float)
        mean = float(docs.mean())
        variance = float(np.mean((docs - mean) ** 2))

        overstock = group[group["doc"] > OVERSTOCK_RATIO * mean]
        understock = group[(group["doc"] < UNDERSTOCK_RATIO * mean) & (group["doc"] < UNDERSTOCK_MAX_DOC)]
        locked_units = int(overstock["on_hand"].sum())

        records.append(
            DistortionRecord(
                style_id=str(style_id),
                distortion_score=round(math.sqrt(variance), 2),
                overstock_locations=[str(s) for s in overstock["store_id"]],
                understock_locations=[str(s) for s in understock["store_id"]],
                locked_cash_estimate=round(locked_units * unit_cost(str(style_id)), 2),
            )
        )

    logger.info("kpi_distortion.computed", styles=len(records), skipped_single_store=skipped)
    return records

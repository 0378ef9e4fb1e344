"""
Size Completeness Score (SCS) — size coverage per retail store × style.

A style's size universe comes from inv_sku_fc_mapping. For every retail
store × style pair with at least one SKU in stock (on_hand > 0):

  present = sizes of the stocked SKUs that map to the style
  score   = |present| / |size universe|
  status  = BROKEN   if score < 0.3
            AT_RISK  if 0.3 <= score < 0.5
            HEALTHY  otherwise

SKU resolution rules (SizeIndex.present_sizes):
  1. A stocked SKU whose mapping row points at the same style covers its size.
  2. Single-size fallback: when the style defines exactly one size, any
     stocked SKU covers it, mapped or not.
  3. When nothing resolves and the style has several sizes, the pair is
     ambiguous and skipped.
Styles with an empty size universe are skipped.
"""

from dataclasses import dataclass, field

import pandas as pd
import structlog

from kpi.stores import StoreClasses

logger = structlog.get_logger()

BROKEN_BELOW = 0.3
AT_RISK_BELOW = 0.5

HEALTHY = "HEALTHY"
AT_RISK = "AT_RISK"
BROKEN = "BROKEN"


@dataclass
class CompletenessRecord:
    store_id: str
    style_id: str
    sizes_present: int
    sizes_total: int
    score: float
    missing_sizes: list[str] = field(default_factory=list)
    status: str = HEALTHY

    @property
    def ratio(self) -> float:
        """Unrounded size coverage; `score` is the stored 4-decimal form."""
        return self.sizes_present / self.sizes_total


def classify_completeness(score: float) -> str:
    if score < BROKEN_BELOW:
        return BROKEN
    if score < AT_RISK_BELOW:
        return AT_RISK
    return HEALTHY


class SizeIndex:
    """Style → size universe and SKU → (style, size) lookups built from the mapping table."""

    def __init__(self, sizes_by_style: dict[str, frozenset[str]], sku_lookup: dict[str, tuple[str, str]]):
        self.sizes_by_style = sizes_by_style
        self.sku_lookup = sku_lookup

    @classmethod
    def from_frame(cls, size_mapping: pd.DataFrame) -> "SizeIndex":
        sizes_by_style: dict[str, set[str]] = {}
        sku_lookup: dict[str, tuple[str, str]] = {}
        for style_id, sku, size_code in size_mapping[["style_id", "sku", "size_code"]].itertuples(index=False):
            if not style_id or not size_code:
                continue
            sizes_by_style.setdefault(style_id, set()).add(size_code)
            if sku:
                sku_lookup[sku] = (style_id, size_code)
        return cls({style: frozenset(sizes) for style, sizes in sizes_by_style.items()}, sku_lookup)

    def sizes(self, style_id: str) -> frozenset[str]:
        return self.sizes_by_style.get(style_id, frozenset())

    def size_of(self, sku: str, style_id: str) -> str | None:
        mapped = self.sku_lookup.get(sku)
        if mapped is None or mapped[0] != style_id:
            return None
        return mapped[1]

    def present_sizes(self, style_id: str, stocked_skus) -> frozenset[str] | None:
        """
        Sizes covered by the stocked SKUs of a style at one store.

        Returns None when coverage cannot be determined (ambiguous style).
        """
        total = self.sizes(style_id)
        if len(total) == 1:
            return total
        present = {size for size in (self.size_of(sku, style_id) for sku in stocked_skus) if size is not None}
        if not present:
            return None
        return frozenset(present) & total


def calculate_completeness(
    positions: pd.DataFrame,
    stores: StoreClasses,
    size_index: SizeIndex,
) -> list[CompletenessRecord]:
    """Compute one CompletenessRecord per stocked retail store × style pair."""
    stocked = positions[positions["store_id"].isin(stores.retail) & (positions["on_hand"] > 0)]
    records: list[CompletenessRecord] = []
    no_size_universe = 0
    ambiguous = 0

    for (style_id, store_id), group in stocked.groupby(["style_id", "store_id"], sort=False):
        total = size_index.sizes(style_id)
        if not total:
            no_size_universe += 1
            continue

        present = size_index.present_sizes(style_id, group["sku"])
        if present is None:
            ambiguous += 1
            continue

        score = len(present) / len(total)
        records.append(
            CompletenessRecord(
                store_id=str(store_id),
                style_id=str(style_id),
                sizes_present=len(present),
                sizes_total=len(total),
                score=round(score, 4),
                missing_sizes=sorted(total - present),
                status=classify_completeness(score),
            )
        )

    records.sort(key=lambda r: (r.style_id, r.store_id))
    logger.info(
        "kpi_completeness.computed",
        pairs=len(records),
        skipped_no_size_universe=no_size_universe,
        skipped_ambiguous=ambiguous,
    )
    return records

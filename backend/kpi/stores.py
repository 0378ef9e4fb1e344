"""Store classification: active vs retail (non central-warehouse) stores."""

from dataclasses import dataclass

import pandas as pd

from db.models import CENTRAL_WAREHOUSE


@dataclass(frozen=True)
class StoreClasses:
    """Store id sets used by the calculators."""

    active: frozenset
    retail: frozenset

    @property
    def warehouses(self) -> frozenset:
        return self.active - self.retail


def classify_stores(stores: pd.DataFrame) -> StoreClasses:
    """
    Partition stores into active and retail sets.

    retail = active stores whose location_type is not central_warehouse.
    Network supply counts every active store; demand and per-store metrics
    only count retail stores.
    """
    if stores.empty:
        return StoreClasses(active=frozenset(), retail=frozenset())

    active = stores[stores["is_active"].fillna(False).astype(bool)]
    retail = active[active["location_type"] != CENTRAL_WAREHOUSE]
    return StoreClasses(active=frozenset(active["id"]), retail=frozenset(retail["id"]))

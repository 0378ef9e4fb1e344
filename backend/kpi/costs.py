"""
Unit cost lookup for valuing inventory KPIs.

Styles with a row in inv_style_costs use their own unit cost; every other
style falls back to the configured default estimate. The lookup remembers
whether it ever fell back so the run can report its cost basis:
  - "measured":  every valued style had a stored cost
  - "estimated": at least one style used the default
"""

import pandas as pd


class UnitCostLookup:
    def __init__(self, costs: dict[str, float], default_unit_cost: float):
        self.costs = dict(costs)
        self.default_unit_cost = float(default_unit_cost)
        self.fallback_styles: set[str] = set()

    @classmethod
    def from_frame(cls, style_costs: pd.DataFrame, default_unit_cost: float) -> "UnitCostLookup":
        if style_costs.empty:
            return cls({}, default_unit_cost)
        valid = style_costs.dropna(subset=["unit_cost"])
        costs = dict(zip(valid["style_id"].astype(str), pd.to_numeric(valid["unit_cost"]).astype(float)))
        return cls(costs, default_unit_cost)

    def __call__(self, style_id: str) -> float:
        cost = self.costs.get(style_id)
        if cost is None:
            self.fallback_styles.add(style_id)
            return self.default_unit_cost
        return cost

    @property
    def cost_basis(self) -> str:
        if self.fallback_styles or not self.costs:
            return "estimated"
        return "measured"

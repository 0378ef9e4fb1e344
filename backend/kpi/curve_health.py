"""Curve Health Index (CHI) — network-average size completeness per style."""

from collections import defaultdict
from dataclasses import dataclass

import structlog

from kpi.completeness import CompletenessRecord

logger = structlog.get_logger()

# (upper bound, band), checked in order against the rounded index
RISK_BANDS = (
    (0.3, "CRITICAL"),
    (0.5, "HIGH"),
    (0.7, "MEDIUM"),
)


@dataclass
class CurveHealthRecord:
    style_id: str
    curve_health_index: float
    risk_band: str


def classify_risk_band(index: float) -> str:
    for upper, band in RISK_BANDS:
        if index < upper:
            return band
    return "LOW"


def calculate_curve_health(completeness: list[CompletenessRecord]) -> list[CurveHealthRecord]:
    """Average the exact size coverage of every store record of a style, round to 4 decimals and band it."""
    scores_by_style: dict[str, list[float]] = defaultdict(list)
    for record in completeness:
        scores_by_style[record.style_id].append(record.ratio)

    records = []
    for style_id in sorted(scores_by_style):
        scores = scores_by_style[style_id]
        index = round(sum(scores) / len(scores), 4)
        band = classify_risk_band(index)
        records.append(CurveHealthRecord(style_id=style_id, curve_health_index=index, risk_band=band))

    logger.info("kpi_curve_health.computed", styles=len(records))
    return records

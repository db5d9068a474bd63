"""
costing_engines -- pure FIFO planning and replay decisions.

Nothing in this package performs I/O; the services in costing_services
load snapshots, call these functions, and persist the outcome.
"""

from costing_engines.fifo import (
    ConsumptionPlan,
    FallbackPricing,
    LotDraw,
    LotSnapshot,
    eligible_lots,
    naive_utc,
    plan_fifo_consumption,
    price_shortfall,
)
from costing_engines.replay import (
    ConsumingKind,
    ConsumingLine,
    CutoffSide,
    HistoricalConsumption,
    LotBaseline,
    classify,
    recalculation_start_date,
    replay_order,
    reset_remaining_quantities,
)

__all__ = [
    "LotSnapshot",
    "LotDraw",
    "ConsumptionPlan",
    "FallbackPricing",
    "eligible_lots",
    "naive_utc",
    "plan_fifo_consumption",
    "price_shortfall",
    "CutoffSide",
    "ConsumingKind",
    "ConsumingLine",
    "LotBaseline",
    "HistoricalConsumption",
    "classify",
    "reset_remaining_quantities",
    "replay_order",
    "recalculation_start_date",
]

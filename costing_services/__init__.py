"""
costing_services -- stateful costing services over the kernel.

    FifoCostingService     sale consumption, restoration, sale-line costing
    RecalculationService   retroactive replay and cost audit trail
    ReturnsService         credit-note lots and debit-note consumption
    StockLotService        lot creation, edit, cost correction, removal
"""

from costing_services.fifo_service import (
    ConsumptionResult,
    FifoCostingService,
    collect_warnings,
)
from costing_services.recalculation_service import (
    RecalculationService,
    RecalculationSummary,
)
from costing_services.returns_service import ReturnableStock, ReturnsService
from costing_services.stock_lot_service import (
    LotCostUpdate,
    LotDeletion,
    StockLotService,
)

__all__ = [
    "FifoCostingService",
    "ConsumptionResult",
    "collect_warnings",
    "RecalculationService",
    "RecalculationSummary",
    "ReturnsService",
    "ReturnableStock",
    "StockLotService",
    "LotDeletion",
    "LotCostUpdate",
]

"""Read-only query selectors."""

from costing_kernel.selectors.base import BaseSelector
from costing_kernel.selectors.stock_selector import (
    CostAuditEntry,
    LineConsumption,
    LotStock,
    ProductStock,
    StockSelector,
)

__all__ = [
    "BaseSelector",
    "StockSelector",
    "ProductStock",
    "LotStock",
    "CostAuditEntry",
    "LineConsumption",
]

"""Domain models for the costing kernel."""

from costing_kernel.models.consumption import (
    DebitNoteLotConsumptionModel,
    StockLotConsumptionModel,
)
from costing_kernel.models.cost_audit_log import CostAuditLogModel, CostChangeReason
from costing_kernel.models.documents import (
    DebitNoteLineModel,
    DebitNoteModel,
    SalesInvoiceLineModel,
    SalesInvoiceModel,
)
from costing_kernel.models.product import ProductModel
from costing_kernel.models.stock_lot import LotSourceType, StockLotModel

__all__ = [
    "ProductModel",
    "SalesInvoiceModel",
    "SalesInvoiceLineModel",
    "DebitNoteModel",
    "DebitNoteLineModel",
    "StockLotModel",
    "LotSourceType",
    "StockLotConsumptionModel",
    "DebitNoteLotConsumptionModel",
    "CostAuditLogModel",
    "CostChangeReason",
]

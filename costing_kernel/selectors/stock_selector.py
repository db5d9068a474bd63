"""
Module: costing_kernel.selectors.stock_selector
Responsibility: Read-only stock and cost queries: on-hand stock per product,
    the consumption edges behind a sale line, the earliest zero-COGS sale,
    and the cost audit report.
Architecture position: Kernel > Selectors.  May import from models/ and
    selectors/base.py.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Lots are always listed in FIFO order (lot_date, created_at, id).
    - Stock value is derived from lot rows at query time; nothing is stored.

Failure modes:
    - get_product_stock returns None for an unknown product rather than
      raising; callers decide whether that is an error.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from costing_kernel.db.types import ZERO
from costing_kernel.models.consumption import StockLotConsumptionModel
from costing_kernel.models.cost_audit_log import CostAuditLogModel
from costing_kernel.models.documents import SalesInvoiceLineModel, SalesInvoiceModel
from costing_kernel.models.product import ProductModel
from costing_kernel.models.stock_lot import StockLotModel
from costing_kernel.selectors.base import BaseSelector


@dataclass(frozen=True, slots=True)
class LotStock:
    """One lot with stock on hand."""

    lot_id: UUID
    source_type: str
    lot_date: date
    unit_cost: Decimal
    initial_quantity: Decimal
    remaining_quantity: Decimal
    warehouse_id: str | None

    @property
    def value(self) -> Decimal:
        return self.remaining_quantity * self.unit_cost


@dataclass(frozen=True, slots=True)
class ProductStock:
    """Stock summary for a product."""

    product_id: UUID
    product_name: str
    total_quantity: Decimal
    total_value: Decimal
    average_cost: Decimal
    lots: tuple[LotStock, ...]


@dataclass(frozen=True, slots=True)
class LineConsumption:
    """One consumption edge for a sale line."""

    stock_lot_id: UUID
    lot_date: date
    quantity_consumed: Decimal
    unit_cost: Decimal
    total_cost: Decimal


@dataclass(frozen=True, slots=True)
class CostAuditEntry:
    """One row of the cost audit report."""

    id: UUID
    product_id: UUID
    invoice_line_id: UUID
    old_cogs: Decimal
    new_cogs: Decimal
    change_amount: Decimal
    change_reason: str
    triggered_by: str | None
    created_at: datetime


def _fifo_order():
    return (StockLotModel.lot_date, StockLotModel.created_at, StockLotModel.id)


class StockSelector(BaseSelector[StockLotModel]):
    """Read-only queries over lots, consumption edges, and the cost audit log."""

    def get_product_stock(
        self,
        product_id: UUID,
        warehouse_id: str | None = None,
    ) -> ProductStock | None:
        """
        On-hand stock for a product: every lot with remaining stock, any date.

        average_cost is total_value / total_quantity, or zero with no stock.
        """
        product = self.session.get(ProductModel, product_id)
        if product is None:
            return None

        stmt = select(StockLotModel).where(
            StockLotModel.product_id == product_id,
            StockLotModel.remaining_quantity > 0,
        )
        if warehouse_id is not None:
            stmt = stmt.where(StockLotModel.warehouse_id == warehouse_id)
        rows = self.session.execute(stmt.order_by(*_fifo_order())).scalars().all()

        lots = tuple(
            LotStock(
                lot_id=lot.id,
                source_type=lot.source_type,
                lot_date=lot.lot_date,
                unit_cost=lot.unit_cost,
                initial_quantity=lot.initial_quantity,
                remaining_quantity=lot.remaining_quantity,
                warehouse_id=lot.warehouse_id,
            )
            for lot in rows
        )
        total_quantity = sum((lot.remaining_quantity for lot in lots), ZERO)
        total_value = sum((lot.value for lot in lots), ZERO)
        average_cost = total_value / total_quantity if total_quantity > 0 else ZERO

        return ProductStock(
            product_id=product.id,
            product_name=product.name,
            total_quantity=total_quantity,
            total_value=total_value,
            average_cost=average_cost,
            lots=lots,
        )

    def earliest_zero_cogs_date(self, product_id: UUID) -> date | None:
        """Issue date of the earliest sale line for the product costed at zero."""
        stmt = (
            select(func.min(SalesInvoiceModel.issue_date))
            .join(SalesInvoiceLineModel, SalesInvoiceLineModel.invoice_id == SalesInvoiceModel.id)
            .where(
                SalesInvoiceLineModel.product_id == product_id,
                SalesInvoiceLineModel.quantity > 0,
                SalesInvoiceLineModel.cost_of_goods_sold == 0,
            )
        )
        return self.session.execute(stmt).scalar()

    def consumptions_for_line(self, invoice_line_id: UUID) -> list[LineConsumption]:
        """Consumption edges for a sale line, in FIFO order of their lots."""
        stmt = (
            select(StockLotConsumptionModel, StockLotModel.lot_date)
            .join(StockLotModel, StockLotModel.id == StockLotConsumptionModel.stock_lot_id)
            .where(StockLotConsumptionModel.invoice_line_id == invoice_line_id)
            .order_by(*_fifo_order())
        )
        return [
            LineConsumption(
                stock_lot_id=row.stock_lot_id,
                lot_date=lot_date,
                quantity_consumed=row.quantity_consumed,
                unit_cost=row.unit_cost,
                total_cost=row.total_cost,
            )
            for row, lot_date in self.session.execute(stmt).all()
        ]

    def cost_audit_entries(
        self,
        product_id: UUID | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[CostAuditEntry]:
        """Cost audit report, newest first."""
        stmt = select(CostAuditLogModel)
        if product_id is not None:
            stmt = stmt.where(CostAuditLogModel.product_id == product_id)
        if since is not None:
            stmt = stmt.where(CostAuditLogModel.created_at >= since)
        stmt = stmt.order_by(
            CostAuditLogModel.created_at.desc(),
            CostAuditLogModel.id.desc(),
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        return [
            CostAuditEntry(
                id=row.id,
                product_id=row.product_id,
                invoice_line_id=row.invoice_line_id,
                old_cogs=row.old_cogs,
                new_cogs=row.new_cogs,
                change_amount=row.change_amount,
                change_reason=row.change_reason,
                triggered_by=row.triggered_by,
                created_at=row.created_at,
            )
            for row in self.session.execute(stmt).scalars().all()
        ]

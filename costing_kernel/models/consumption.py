"""
Module: costing_kernel.models.consumption
Responsibility: ORM persistence for the consumption ledger: the edges that
    record how much of which lot went to which consuming line, and at what
    unit cost.
Architecture position: Kernel > Models.  May import from db/base.py only.

Two edge tables exist because the two consuming line kinds live in different
tables: StockLotConsumptionModel links a lot to a sales invoice line,
DebitNoteLotConsumptionModel links a lot to a debit-note line.

Invariants enforced:
    - unit_cost is copied from the lot when the edge is written, so a later
      lot cost edit must rewrite the edge explicitly (see
      StockLotService.update_lot_cost).
    - total_cost = quantity * unit_cost at storage precision.
    - Per lot, the sum of edge quantities never exceeds initial_quantity.

Audit relevance:
    Edges are deleted (not reversed) on restoration and during recalculation.
    The durable history of what a sale line cost over time lives in the
    cost audit log, not here.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Numeric
from sqlalchemy.orm import Mapped, mapped_column, relationship

from costing_kernel.db.base import TimestampedBase, UUIDString
from costing_kernel.models.stock_lot import StockLotModel


class StockLotConsumptionModel(TimestampedBase):
    """Lot -> sales invoice line edge."""

    __tablename__ = "stock_lot_consumptions"

    __table_args__ = (
        Index("idx_lot_consumption_lot", "stock_lot_id"),
        Index("idx_lot_consumption_line", "invoice_line_id"),
    )

    stock_lot_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("stock_lots.id", ondelete="CASCADE"),
        nullable=False,
    )

    invoice_line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("sales_invoice_lines.id", ondelete="CASCADE"),
        nullable=False,
    )

    quantity_consumed: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    unit_cost: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    total_cost: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    stock_lot: Mapped[StockLotModel] = relationship(back_populates="consumptions")

    def __repr__(self) -> str:
        return (
            f"<StockLotConsumption lot={self.stock_lot_id} line={self.invoice_line_id} "
            f"qty={self.quantity_consumed} @ {self.unit_cost}>"
        )


class DebitNoteLotConsumptionModel(TimestampedBase):
    """Lot -> debit-note line edge."""

    __tablename__ = "debit_note_lot_consumptions"

    __table_args__ = (
        Index("idx_debit_consumption_lot", "stock_lot_id"),
        Index("idx_debit_consumption_line", "debit_note_line_id"),
    )

    stock_lot_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("stock_lots.id", ondelete="CASCADE"),
        nullable=False,
    )

    debit_note_line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("debit_note_lines.id", ondelete="CASCADE"),
        nullable=False,
    )

    quantity_returned: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    unit_cost: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    total_cost: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    stock_lot: Mapped[StockLotModel] = relationship(back_populates="debit_note_consumptions")

"""
Module: costing_kernel.models.stock_lot
Responsibility: ORM persistence for stock lots.  Each lot is one inbound stock
    event (purchase line, opening stock entry, credit-note line) at a single
    unit cost, drawn down first-in-first-out by sales and purchase returns.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - 0 <= remaining_quantity <= initial_quantity between flushes.  Services
      check before writing; db/immutability.py re-checks at flush time.
    - One lot per owning source line: (source_type, source_id) is unique.
    - FIFO order is (lot_date, created_at, id).  lot_date is the business
      date of the inbound event, NOT the row creation time.

Failure modes:
    - IntegrityError on a second lot for the same source line.
    - LotOverdrawnError / LotOverRestoredError raised at flush when a
      remaining-quantity update escapes the service-level guards.

Audit relevance:
    remaining_quantity is the only mutable stock figure in the system.  Every
    change to it has a matching consumption row (or the deletion of one), so
    initial_quantity - remaining_quantity always equals the quantity recorded
    in the consumption ledger for the lot.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from costing_kernel.db.base import TimestampedBase, UUIDString

if TYPE_CHECKING:
    from costing_kernel.models.consumption import (
        DebitNoteLotConsumptionModel,
        StockLotConsumptionModel,
    )


class LotSourceType(str, Enum):
    """Kind of inbound event that created a lot."""

    PURCHASE = "PURCHASE"
    OPENING_STOCK = "OPENING_STOCK"
    CREDIT_NOTE = "CREDIT_NOTE"


class StockLotModel(TimestampedBase):
    """
    Persistent storage for one stock lot.

    Contract:
        initial_quantity is set at creation and changes only through the
        explicit lot update used by opening-stock edits.  remaining_quantity
        moves down on consumption and back up on restoration.

    Non-goals:
        - Does NOT enforce positive quantity / non-negative cost at the ORM
          level; StockLotService validates on creation.
    """

    __tablename__ = "stock_lots"

    __table_args__ = (
        # FIFO scan: a product's lots by date
        Index("idx_stock_lot_product_date", "product_id", "lot_date"),
        Index("idx_stock_lot_product_warehouse", "product_id", "warehouse_id"),
        UniqueConstraint("source_type", "source_id", name="uq_stock_lot_source"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )

    source_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Owning source line (purchase line, opening stock entry, credit-note line)
    source_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Parent document of the source line, when there is one
    source_document_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    lot_date: Mapped[date] = mapped_column(Date, nullable=False)

    unit_cost: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    initial_quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    remaining_quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    warehouse_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    consumptions: Mapped[list[StockLotConsumptionModel]] = relationship(
        back_populates="stock_lot",
        cascade="all, delete-orphan",
    )

    debit_note_consumptions: Mapped[list[DebitNoteLotConsumptionModel]] = relationship(
        back_populates="stock_lot",
        cascade="all, delete-orphan",
    )

    @property
    def source(self) -> LotSourceType:
        return LotSourceType(self.source_type)

    @property
    def is_exhausted(self) -> bool:
        return self.remaining_quantity <= 0

    def __repr__(self) -> str:
        return (
            f"<StockLot {self.id}: product={self.product_id} date={self.lot_date} "
            f"remaining={self.remaining_quantity}/{self.initial_quantity} @ {self.unit_cost}>"
        )

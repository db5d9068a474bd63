"""
Module: costing_kernel.models.documents
Responsibility: ORM persistence for the consuming documents the costing core
    replays: sales invoices (stock leaves to a customer) and debit notes
    (stock leaves back to a supplier).
Architecture position: Kernel > Models.  May import from db/base.py only.

Only the fields the costing core needs are modelled: the header's issue date
(the FIFO as-of date for every line), the optional warehouse scope, and on
each line the product, quantity, and the cost figure the core writes back.
Pricing, tax, and party data live with the request layer.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from costing_kernel.db.base import TimestampedBase, UUIDString


class SalesInvoiceModel(TimestampedBase):
    """Sales invoice header."""

    __tablename__ = "sales_invoices"

    __table_args__ = (
        Index("idx_sales_invoice_issue_date", "issue_date"),
    )

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    issue_date: Mapped[date] = mapped_column(Date, nullable=False)

    warehouse_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    lines: Mapped[list["SalesInvoiceLineModel"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="SalesInvoiceLineModel.created_at",
    )


class SalesInvoiceLineModel(TimestampedBase):
    """
    One product line on a sales invoice.

    cost_of_goods_sold is written by the costing core each time the line is
    consumed or replayed; everything else is owned by the caller.
    """

    __tablename__ = "sales_invoice_lines"

    __table_args__ = (
        Index("idx_sales_line_product", "product_id"),
        Index("idx_sales_line_invoice", "invoice_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("sales_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )

    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    cost_of_goods_sold: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )

    invoice: Mapped[SalesInvoiceModel] = relationship(back_populates="lines")

    def __repr__(self) -> str:
        return (
            f"<SalesInvoiceLine {self.id}: product={self.product_id} "
            f"qty={self.quantity} cogs={self.cost_of_goods_sold}>"
        )


class DebitNoteModel(TimestampedBase):
    """Debit note (purchase return) header."""

    __tablename__ = "debit_notes"

    __table_args__ = (
        Index("idx_debit_note_issue_date", "issue_date"),
    )

    debit_note_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    issue_date: Mapped[date] = mapped_column(Date, nullable=False)

    warehouse_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    lines: Mapped[list["DebitNoteLineModel"]] = relationship(
        back_populates="debit_note",
        cascade="all, delete-orphan",
        order_by="DebitNoteLineModel.created_at",
    )


class DebitNoteLineModel(TimestampedBase):
    """One product line on a debit note; total_cost is written by the costing core."""

    __tablename__ = "debit_note_lines"

    __table_args__ = (
        Index("idx_debit_line_product", "product_id"),
        Index("idx_debit_line_note", "debit_note_id"),
    )

    debit_note_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("debit_notes.id", ondelete="CASCADE"),
        nullable=False,
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )

    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    total_cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )

    debit_note: Mapped[DebitNoteModel] = relationship(back_populates="lines")

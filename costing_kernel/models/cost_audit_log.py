"""
Module: costing_kernel.models.cost_audit_log
Responsibility: Append-only record of every change a recalculation made to a
    sale line's cost of goods sold.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: db/immutability.py rejects any ORM UPDATE or DELETE.
    - change_amount = new_cogs - old_cogs.
    - invoice_line_id is a plain reference, not a foreign key, so the trail
      outlives the sale line it describes.

Audit relevance:
    This is the only durable history of COGS movement.  The consumption
    ledger is rebuilt freely; this table is never rewritten.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import TimestampedBase, UUIDString


class CostChangeReason:
    """Reason tags written to cost_audit_logs.change_reason."""

    RECALCULATION = "recalculation"
    BACKDATED_PURCHASE = "backdated_purchase"
    ZERO_COGS_FIX = "zero_cogs_fix"
    LOT_COST_UPDATE = "lot_cost_update"


class CostAuditLogModel(TimestampedBase):
    """One COGS change on one sale line."""

    __tablename__ = "cost_audit_logs"

    __table_args__ = (
        Index("idx_cost_audit_product", "product_id", "created_at"),
        Index("idx_cost_audit_line", "invoice_line_id"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )

    invoice_line_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    old_cogs: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    new_cogs: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    change_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    change_reason: Mapped[str] = mapped_column(String(50), nullable=False)

    triggered_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CostAuditLog line={self.invoice_line_id} "
            f"{self.old_cogs} -> {self.new_cogs} ({self.change_reason})>"
        )

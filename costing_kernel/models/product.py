"""
Module: costing_kernel.models.product
Responsibility: ORM persistence for the product rows the costing core reads.
Architecture position: Kernel > Models.  May import from db/base.py only.

The product row carries the fallback unit cost used to value sales that
outrun recorded stock.  The costing core reads ``cost`` but never writes it;
its maintenance belongs to the catalogue / purchasing side of the system.
The row is also the per-product lock target: every lot mutation takes
``SELECT ... FOR UPDATE`` on it first.
"""

from decimal import Decimal

from sqlalchemy import Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import TimestampedBase


class ProductModel(TimestampedBase):
    """Product master row (fallback cost source and lock target)."""

    __tablename__ = "products"

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    sku: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)

    # Fallback unit cost; may be zero when never set
    cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )

    def __repr__(self) -> str:
        return f"<Product {self.id}: {self.name} cost={self.cost}>"

"""
costing_services.stock_lot_service -- Creation, edit, and removal of stock lots.

Responsibility:
    Own the inbound side of the lot store: one lot per purchase line,
    opening-stock entry, or credit-note line; edits to an opening-stock lot;
    unit cost corrections; and removal when the owning source is deleted.

Architecture position:
    Services -- stateful orchestration over kernel models.

Invariants enforced:
    - A new lot has positive quantity, non-negative cost, and
      remaining_quantity == initial_quantity.
    - An initial-quantity edit moves remaining_quantity by the same delta
      and is rejected if that would take remaining below zero.
    - A unit cost correction rewrites every consumption edge of the lot and
      moves each affected line's cost by exactly the edge delta, so any
      fallback-priced shortfall on that line is preserved.

Failure modes:
    - ProductNotFoundError, InvalidQuantityError, InvalidCostError on create.
    - StockLotNotFoundError on edit or delete of an unknown lot.
    - LotOverdrawnError when an edit would leave negative remaining stock.

Audit relevance:
    Lot removal and date edits do not fix later sales themselves; they
    report the date a recalculation must start from and the caller runs it.
    Unit cost corrections append a cost audit entry for each sale line they
    change.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_config.schema import CostingConfig
from costing_engines.replay import recalculation_start_date
from costing_kernel.db.types import ZERO, normalize_stored, to_decimal
from costing_kernel.domain.clock import Clock
from costing_kernel.exceptions import (
    InvalidCostError,
    InvalidQuantityError,
    LotOverdrawnError,
    ProductNotFoundError,
    StockLotNotFoundError,
)
from costing_kernel.logging_config import get_logger
from costing_kernel.models.consumption import (
    DebitNoteLotConsumptionModel,
    StockLotConsumptionModel,
)
from costing_kernel.models.cost_audit_log import CostAuditLogModel, CostChangeReason
from costing_kernel.models.documents import DebitNoteLineModel, SalesInvoiceLineModel
from costing_kernel.models.product import ProductModel
from costing_kernel.models.stock_lot import LotSourceType, StockLotModel
from costing_kernel.services.base import BaseService

logger = get_logger("services.stock_lot")


@dataclass(frozen=True, slots=True)
class LotDeletion:
    """What the caller must do after a lot was removed."""

    needs_recalculation: bool
    product_id: UUID
    from_date: date


@dataclass(frozen=True, slots=True)
class LotCostUpdate:
    """Lines whose cost moved because a lot's unit cost was corrected."""

    lot_id: UUID
    old_unit_cost: Decimal
    new_unit_cost: Decimal
    sale_lines_updated: tuple[UUID, ...]
    debit_note_lines_updated: tuple[UUID, ...]


def _as_cost(value: Decimal | int | str) -> Decimal:
    try:
        cost = to_decimal(value)
    except ValueError:
        raise InvalidCostError(value, "not a decimal value") from None
    if not cost.is_finite() or cost < 0:
        raise InvalidCostError(value)
    return cost


def _as_lot_quantity(value: Decimal | int | str) -> Decimal:
    try:
        quantity = to_decimal(value)
    except ValueError:
        raise InvalidQuantityError(value, "not a decimal value") from None
    if not quantity.is_finite() or quantity <= 0:
        raise InvalidQuantityError(value)
    return quantity


class StockLotService(BaseService[StockLotModel]):
    """
    Inbound lot store.

    Contract:
        Receives Session (and optionally CostingConfig and Clock) via
        constructor injection.  Only flushes.
    Non-goals:
        - Does not update product.cost when a lot is created.
        - Does not run recalculations; it reports where one must start.
    """

    def __init__(
        self,
        session: Session,
        config: CostingConfig | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session, clock)
        self.config = config or CostingConfig()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _create_lot(
        self,
        source_type: LotSourceType,
        product_id: UUID,
        source_id: UUID,
        quantity: Decimal | int | str,
        unit_cost: Decimal | int | str,
        lot_date: date,
        source_document_id: UUID | None,
        warehouse_id: str | None,
    ) -> StockLotModel:
        qty = _as_lot_quantity(quantity)
        cost = _as_cost(unit_cost)
        if self.session.get(ProductModel, product_id) is None:
            raise ProductNotFoundError(str(product_id))

        lot = StockLotModel(
            product_id=product_id,
            source_type=source_type.value,
            source_id=source_id,
            source_document_id=source_document_id,
            lot_date=lot_date,
            unit_cost=cost,
            initial_quantity=qty,
            remaining_quantity=qty,
            warehouse_id=warehouse_id,
        )
        self.session.add(lot)
        self.session.flush()

        logger.info(
            "stock_lot_created",
            extra={
                "stock_lot_id": str(lot.id),
                "product_id": str(product_id),
                "source_type": source_type.value,
                "source_id": str(source_id),
                "lot_date": lot_date.isoformat(),
                "quantity": str(qty),
                "unit_cost": str(cost),
                "warehouse_id": warehouse_id,
            },
        )
        return lot

    def create_purchase_lot(
        self,
        product_id: UUID,
        purchase_line_id: UUID,
        quantity: Decimal | int | str,
        unit_cost: Decimal | int | str,
        lot_date: date,
        purchase_id: UUID | None = None,
        warehouse_id: str | None = None,
    ) -> StockLotModel:
        return self._create_lot(
            LotSourceType.PURCHASE,
            product_id,
            purchase_line_id,
            quantity,
            unit_cost,
            lot_date,
            purchase_id,
            warehouse_id,
        )

    def create_opening_stock_lot(
        self,
        product_id: UUID,
        opening_stock_id: UUID,
        quantity: Decimal | int | str,
        unit_cost: Decimal | int | str,
        lot_date: date,
        warehouse_id: str | None = None,
    ) -> StockLotModel:
        return self._create_lot(
            LotSourceType.OPENING_STOCK,
            product_id,
            opening_stock_id,
            quantity,
            unit_cost,
            lot_date,
            None,
            warehouse_id,
        )

    def create_credit_note_lot(
        self,
        product_id: UUID,
        credit_note_line_id: UUID,
        quantity: Decimal | int | str,
        unit_cost: Decimal | int | str,
        lot_date: date,
        credit_note_id: UUID | None = None,
        warehouse_id: str | None = None,
    ) -> StockLotModel:
        return self._create_lot(
            LotSourceType.CREDIT_NOTE,
            product_id,
            credit_note_line_id,
            quantity,
            unit_cost,
            lot_date,
            credit_note_id,
            warehouse_id,
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_lot(self, lot_id: UUID) -> StockLotModel:
        lot = self.session.get(StockLotModel, lot_id)
        if lot is None:
            logger.warning("stock_lot_not_found", extra={"stock_lot_id": str(lot_id)})
            raise StockLotNotFoundError(str(lot_id))
        return lot

    def find_lot_for_source(
        self,
        source_type: LotSourceType,
        source_id: UUID,
    ) -> StockLotModel | None:
        return self.session.execute(
            select(StockLotModel).where(
                StockLotModel.source_type == source_type.value,
                StockLotModel.source_id == source_id,
            )
        ).scalars().first()

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def update_lot(
        self,
        lot_id: UUID,
        lot_date: date | None = None,
        unit_cost: Decimal | int | str | None = None,
        initial_quantity: Decimal | int | str | None = None,
    ) -> date:
        """
        Edit an opening-stock style lot in place.

        Returns:
            The date a recalculation must start from: the earlier of the
            old and new lot dates.
        """
        lot = self.get_lot(lot_id)
        old_date = lot.lot_date

        if initial_quantity is not None:
            new_initial = _as_lot_quantity(initial_quantity)
            delta = new_initial - lot.initial_quantity
            new_remaining = lot.remaining_quantity + delta
            if new_remaining < 0:
                logger.error(
                    "stock_lot_edit_rejected",
                    extra={
                        "stock_lot_id": str(lot.id),
                        "remaining": str(lot.remaining_quantity),
                        "initial_quantity": str(new_initial),
                    },
                )
                raise LotOverdrawnError(
                    lot_id=str(lot.id),
                    remaining=lot.remaining_quantity,
                    requested=-delta,
                )
            lot.initial_quantity = new_initial
            lot.remaining_quantity = normalize_stored(new_remaining)

        if unit_cost is not None:
            lot.unit_cost = _as_cost(unit_cost)

        if lot_date is not None:
            lot.lot_date = lot_date

        self.session.flush()

        start = recalculation_start_date(old_date, lot.lot_date)
        logger.info(
            "stock_lot_updated",
            extra={
                "stock_lot_id": str(lot.id),
                "lot_date": lot.lot_date.isoformat(),
                "initial_quantity": str(lot.initial_quantity),
                "unit_cost": str(lot.unit_cost),
                "recalculate_from": start.isoformat(),
            },
        )
        return start

    def update_lot_cost(
        self,
        lot_id: UUID,
        unit_cost: Decimal | int | str,
        triggered_by: str | None = None,
    ) -> LotCostUpdate:
        """
        Correct a lot's unit cost and carry the correction to its consumers.

        Each consumption edge is repriced; each affected sale line's
        cost_of_goods_sold (and debit-note line's total_cost) moves by the
        sum of its edge deltas.  Changed sale lines get a cost audit entry.
        """
        lot = self.get_lot(lot_id)
        new_cost = _as_cost(unit_cost)
        old_cost = lot.unit_cost
        lot.unit_cost = new_cost

        sale_deltas: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
        sale_edges = self.session.execute(
            select(StockLotConsumptionModel).where(
                StockLotConsumptionModel.stock_lot_id == lot.id
            )
        ).scalars().all()
        for edge in sale_edges:
            new_total = normalize_stored(edge.quantity_consumed * new_cost)
            sale_deltas[edge.invoice_line_id] += new_total - edge.total_cost
            edge.unit_cost = new_cost
            edge.total_cost = new_total

        debit_deltas: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
        debit_edges = self.session.execute(
            select(DebitNoteLotConsumptionModel).where(
                DebitNoteLotConsumptionModel.stock_lot_id == lot.id
            )
        ).scalars().all()
        for edge in debit_edges:
            new_total = normalize_stored(edge.quantity_returned * new_cost)
            debit_deltas[edge.debit_note_line_id] += new_total - edge.total_cost
            edge.unit_cost = new_cost
            edge.total_cost = new_total

        for line_id, delta in sale_deltas.items():
            line = self.session.get(SalesInvoiceLineModel, line_id)
            old_cogs = normalize_stored(line.cost_of_goods_sold)
            new_cogs = normalize_stored(old_cogs + delta)
            line.cost_of_goods_sold = new_cogs
            if new_cogs != old_cogs:
                self.session.add(
                    CostAuditLogModel(
                        product_id=lot.product_id,
                        invoice_line_id=line_id,
                        old_cogs=old_cogs,
                        new_cogs=new_cogs,
                        change_amount=new_cogs - old_cogs,
                        change_reason=CostChangeReason.LOT_COST_UPDATE,
                        triggered_by=triggered_by,
                    )
                )

        for line_id, delta in debit_deltas.items():
            line = self.session.get(DebitNoteLineModel, line_id)
            line.total_cost = normalize_stored(line.total_cost + delta)

        self.session.flush()

        logger.info(
            "stock_lot_cost_updated",
            extra={
                "stock_lot_id": str(lot.id),
                "old_unit_cost": str(old_cost),
                "new_unit_cost": str(new_cost),
                "sale_lines_updated": len(sale_deltas),
                "debit_note_lines_updated": len(debit_deltas),
            },
        )
        return LotCostUpdate(
            lot_id=lot.id,
            old_unit_cost=old_cost,
            new_unit_cost=new_cost,
            sale_lines_updated=tuple(sorted(sale_deltas, key=str)),
            debit_note_lines_updated=tuple(sorted(debit_deltas, key=str)),
        )

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def delete_lot(self, lot_id: UUID) -> LotDeletion:
        """
        Remove a lot together with its consumption edges.

        Lines that drew from the lot keep their old cost until the caller
        recalculates from the returned date.
        """
        lot = self.get_lot(lot_id)
        consumed = bool(
            self.session.execute(
                select(StockLotConsumptionModel.id)
                .where(StockLotConsumptionModel.stock_lot_id == lot.id)
                .limit(1)
            ).first()
            or self.session.execute(
                select(DebitNoteLotConsumptionModel.id)
                .where(DebitNoteLotConsumptionModel.stock_lot_id == lot.id)
                .limit(1)
            ).first()
        )
        deletion = LotDeletion(
            needs_recalculation=consumed,
            product_id=lot.product_id,
            from_date=lot.lot_date,
        )

        self.session.delete(lot)
        self.session.flush()

        logger.info(
            "stock_lot_deleted",
            extra={
                "stock_lot_id": str(lot_id),
                "product_id": str(deletion.product_id),
                "needs_recalculation": deletion.needs_recalculation,
                "from_date": deletion.from_date.isoformat(),
            },
        )
        return deletion

    def delete_lots_for_source(
        self,
        source_type: LotSourceType,
        source_id: UUID,
    ) -> LotDeletion | None:
        """Remove the lot owned by a source line; None when there is none."""
        lot = self.find_lot_for_source(source_type, source_id)
        if lot is None:
            return None
        return self.delete_lot(lot.id)

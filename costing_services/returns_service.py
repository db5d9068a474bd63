"""
costing_services.returns_service -- Stock effects of sales and purchase returns.

Responsibility:
    Credit notes (customer returns stock) create a new lot valued at what the
    goods originally cost.  Debit notes (stock returned to a supplier)
    consume lots FIFO like a sale, except that a shortfall is a hard error:
    goods that are not on hand cannot be sent back.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Reuses FifoCostingService for planning and lot locking, and
    StockLotService for lot creation and removal.

Invariants enforced:
    - Debit-note shortfall raises InsufficientStockError BEFORE any lot or
      ledger row is written.
    - Debit-note restoration mirrors sale restoration and never restores a
      lot above its initial quantity.

Failure modes:
    - InsufficientStockError from consume_for_debit_note.
    - ConsumingLineNotFoundError from the debit-note line helpers.
    - ProductNotFoundError / InvalidQuantityError as for sales.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_config.schema import CostingConfig
from costing_engines.fifo import ConsumptionPlan
from costing_kernel.db.types import ZERO, normalize_stored
from costing_kernel.domain.clock import Clock
from costing_kernel.exceptions import (
    ConsumingLineNotFoundError,
    InsufficientStockError,
)
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.models.consumption import DebitNoteLotConsumptionModel
from costing_kernel.models.documents import DebitNoteLineModel, SalesInvoiceLineModel
from costing_kernel.models.stock_lot import LotSourceType, StockLotModel
from costing_kernel.services.base import BaseService
from costing_services.fifo_service import (
    FifoCostingService,
    as_quantity,
    draw_from_lot,
    return_to_lot,
)
from costing_services.stock_lot_service import LotDeletion, StockLotService

logger = get_logger("services.returns")


@dataclass(frozen=True, slots=True)
class ReturnableStock:
    """Whether a purchase return of a given quantity can be honoured."""

    requested: Decimal
    available: Decimal
    can_return: bool
    shortfall: Decimal


class ReturnsService(BaseService[StockLotModel]):
    """
    Lot effects of credit notes and debit notes.

    Contract:
        Receives Session (and optionally CostingConfig, Clock, and the
        collaborating services) via constructor injection.  Only flushes.
    """

    def __init__(
        self,
        session: Session,
        config: CostingConfig | None = None,
        clock: Clock | None = None,
        fifo: FifoCostingService | None = None,
        lots: StockLotService | None = None,
    ):
        super().__init__(session, clock)
        self.config = config or CostingConfig()
        self.fifo = fifo or FifoCostingService(session, self.config, self._clock)
        self.lots = lots or StockLotService(session, self.config, self._clock)

    # ------------------------------------------------------------------
    # Credit notes (sales returns)
    # ------------------------------------------------------------------

    def original_unit_cogs(self, invoice_line_id: UUID) -> Decimal | None:
        """
        Per-unit COGS of a sale line: COGS / quantity.

        Returns None for an unknown line and zero for a zero-quantity line.
        """
        line = self.session.get(SalesInvoiceLineModel, invoice_line_id)
        if line is None:
            return None
        if line.quantity > 0:
            return line.cost_of_goods_sold / line.quantity
        return ZERO

    def create_credit_note_lot(
        self,
        credit_note_line_id: UUID,
        product_id: UUID,
        quantity: Decimal | int | str,
        lot_date: date,
        original_invoice_line_id: UUID | None = None,
        unit_cost: Decimal | int | str | None = None,
        credit_note_id: UUID | None = None,
        warehouse_id: str | None = None,
    ) -> StockLotModel:
        """
        Put returned goods back into stock as a new lot dated at the return.

        The lot's unit cost is, in order: the explicit unit_cost, the
        original per-unit COGS of the returned sale line, the product's
        fallback cost.
        """
        product = self.fifo.get_product(product_id)

        cost = unit_cost
        cost_source = "explicit"
        if cost is None and original_invoice_line_id is not None:
            cost = self.original_unit_cogs(original_invoice_line_id)
            cost_source = "original_sale"
        if cost is None:
            cost = product.cost or ZERO
            cost_source = "product_fallback"

        lot = self.lots.create_credit_note_lot(
            product_id=product_id,
            credit_note_line_id=credit_note_line_id,
            quantity=quantity,
            unit_cost=normalize_stored(Decimal(str(cost))),
            lot_date=lot_date,
            credit_note_id=credit_note_id,
            warehouse_id=warehouse_id,
        )
        logger.info(
            "credit_note_lot_created",
            extra={
                "stock_lot_id": str(lot.id),
                "credit_note_line_id": str(credit_note_line_id),
                "cost_source": cost_source,
            },
        )
        return lot

    def delete_credit_note_lot(self, credit_note_line_id: UUID) -> LotDeletion | None:
        """
        Remove the lot created by a credit-note line.

        Returns None when the line never created a lot.
        """
        lot = self.lots.find_lot_for_source(LotSourceType.CREDIT_NOTE, credit_note_line_id)
        if lot is None:
            logger.debug(
                "credit_note_lot_absent",
                extra={"credit_note_line_id": str(credit_note_line_id)},
            )
            return None
        return self.lots.delete_lot(lot.id)

    # ------------------------------------------------------------------
    # Debit notes (purchase returns)
    # ------------------------------------------------------------------

    def consume_for_debit_note(
        self,
        product_id: UUID,
        quantity: Decimal | int | str,
        debit_note_line_id: UUID,
        as_of_date: date,
        warehouse_id: str | None = None,
    ) -> ConsumptionPlan:
        """
        Consume lots FIFO for a purchase return.

        Raises:
            InsufficientStockError: If eligible stock does not cover the
                quantity.  Nothing has been written when this is raised.
        """
        requested = as_quantity(quantity)

        with LogContext.bind(product_id=product_id, document_id=debit_note_line_id):
            self.fifo.lock_product(product_id)
            plan, lots_by_id = self.fifo.plan_with_lots(product_id, requested, as_of_date, warehouse_id)

            if plan.insufficient_stock:
                logger.warning(
                    "debit_note_insufficient_stock",
                    extra={
                        "requested": str(requested),
                        "available": str(plan.available_quantity),
                        "shortfall": str(plan.shortfall),
                    },
                )
                raise InsufficientStockError(
                    product_id=str(product_id),
                    requested=requested,
                    available=plan.available_quantity,
                    shortfall=plan.shortfall,
                )

            for draw in plan.draws:
                lot = lots_by_id[draw.lot_id]
                draw_from_lot(lot, draw.quantity)
                self.session.add(
                    DebitNoteLotConsumptionModel(
                        stock_lot_id=lot.id,
                        debit_note_line_id=debit_note_line_id,
                        quantity_returned=draw.quantity,
                        unit_cost=draw.unit_cost,
                        total_cost=normalize_stored(draw.cost),
                    )
                )
            self.session.flush()

            logger.info(
                "debit_note_consume_completed",
                extra={
                    "lots_drawn": len(plan.draws),
                    "total_cost": str(plan.total_cost),
                },
            )
        return plan

    def get_debit_note_line(self, line_id: UUID) -> DebitNoteLineModel:
        line = self.session.get(DebitNoteLineModel, line_id)
        if line is None:
            raise ConsumingLineNotFoundError(str(line_id), "Debit note")
        return line

    def cost_debit_note_line(self, line_id: UUID) -> ConsumptionPlan:
        """
        Consume stock for a debit-note line and write its total_cost.

        A line with quantity <= 0 returns nothing and costs 0.
        """
        line = self.get_debit_note_line(line_id)
        if line.quantity <= 0:
            line.total_cost = ZERO
            self.session.flush()
            return ConsumptionPlan.empty(line.quantity)

        note = line.debit_note
        plan = self.consume_for_debit_note(
            line.product_id,
            line.quantity,
            line.id,
            note.issue_date,
            note.warehouse_id,
        )
        line.total_cost = normalize_stored(plan.total_cost)
        self.session.flush()
        return plan

    def restore_debit_note(self, debit_note_line_id: UUID) -> Decimal:
        """
        Reverse every lot draw of a debit-note line.

        Returns:
            Total quantity returned to lots.
        """
        rows = list(
            self.session.execute(
                select(DebitNoteLotConsumptionModel).where(
                    DebitNoteLotConsumptionModel.debit_note_line_id == debit_note_line_id
                )
            ).scalars().all()
        )
        if not rows:
            return ZERO

        for product_id in sorted({row.stock_lot.product_id for row in rows}, key=str):
            self.fifo.lock_product(product_id)

        restored = ZERO
        for row in rows:
            return_to_lot(row.stock_lot, row.quantity_returned)
            restored += row.quantity_returned
            self.session.delete(row)
        self.session.flush()

        logger.info(
            "debit_note_restore_completed",
            extra={
                "debit_note_line_id": str(debit_note_line_id),
                "rows_removed": len(rows),
                "quantity_restored": str(restored),
            },
        )
        return restored

    def check_returnable_stock(
        self,
        product_id: UUID,
        quantity: Decimal | int | str,
        warehouse_id: str | None = None,
    ) -> ReturnableStock:
        """
        Stock on hand against a requested return quantity.

        Counts every lot with remaining stock regardless of date.
        """
        requested = as_quantity(quantity)
        stmt = select(StockLotModel.remaining_quantity).where(
            StockLotModel.product_id == product_id,
            StockLotModel.remaining_quantity > 0,
        )
        if warehouse_id is not None:
            stmt = stmt.where(StockLotModel.warehouse_id == warehouse_id)
        available = sum(self.session.execute(stmt).scalars().all(), ZERO)

        can_return = available >= requested
        return ReturnableStock(
            requested=requested,
            available=available,
            can_return=can_return,
            shortfall=ZERO if can_return else requested - available,
        )

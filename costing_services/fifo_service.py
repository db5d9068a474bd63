"""
costing_services.fifo_service -- FIFO consumption against persisted lots.

Responsibility:
    Turn a sale into lot decrements and consumption rows, and undo that when
    a sale line is edited or deleted.  Shortfalls are priced at the product's
    fallback cost and reported as warnings, never as errors.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Planning is delegated to costing_engines.fifo; this module loads lot
    snapshots, applies the plan, and writes the ledger.

Invariants enforced:
    - Per-product serialization: the product row is locked FOR UPDATE before
      any lot of that product is read for mutation.
    - A lot is never decremented below zero (LotOverdrawnError) nor restored
      above its initial quantity (LotOverRestoredError).  Values are never
      clamped.
    - One consumption row per lot drawn, carrying the lot's unit cost at the
      time of the draw.

Failure modes:
    - ProductNotFoundError for an unknown product.
    - InvalidQuantityError for a non-positive or non-numeric quantity.
    - ConsumingLineNotFoundError from the sale-line helpers.

Audit relevance:
    Every consume and restore is logged with product, line, quantities, and
    cost.  COGS written here is the figure the recalculation engine compares
    against when it appends cost audit entries.

Usage:
    fifo = FifoCostingService(session)
    result = fifo.cost_sale_line(line.id)
    for warning in result.warnings:
        notify(warning)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_config.schema import CostingConfig
from costing_engines.fifo import (
    ConsumptionPlan,
    LotDraw,
    LotSnapshot,
    plan_fifo_consumption,
    price_shortfall,
)
from costing_kernel.db.types import ZERO, normalize_stored, to_decimal
from costing_kernel.domain.clock import Clock
from costing_kernel.exceptions import (
    ConsumingLineNotFoundError,
    InvalidQuantityError,
    LotOverdrawnError,
    LotOverRestoredError,
    ProductNotFoundError,
)
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.models.consumption import StockLotConsumptionModel
from costing_kernel.models.documents import SalesInvoiceLineModel
from costing_kernel.models.product import ProductModel
from costing_kernel.models.stock_lot import StockLotModel
from costing_kernel.services.base import BaseService

logger = get_logger("services.fifo")


@dataclass(frozen=True, slots=True)
class ConsumptionResult:
    """
    Outcome of consuming stock for one sale line.

    total_cogs = plan.total_cost + shortfall * fallback_unit_cost.
    """

    plan: ConsumptionPlan
    total_cogs: Decimal
    insufficient_stock: bool
    shortfall: Decimal
    available_quantity: Decimal
    used_fallback_cost: bool
    fallback_unit_cost: Decimal | None
    warnings: tuple[str, ...]

    @property
    def consumptions(self) -> tuple[LotDraw, ...]:
        return self.plan.draws


def collect_warnings(results: Iterable[ConsumptionResult]) -> list[str]:
    """Flatten warnings across the lines of a multi-line document."""
    warnings: list[str] = []
    for result in results:
        warnings.extend(result.warnings)
    return warnings


def as_quantity(value: Decimal | int | str) -> Decimal:
    """Coerce and validate a positive quantity."""
    try:
        quantity = to_decimal(value)
    except ValueError:
        raise InvalidQuantityError(value, "not a decimal value") from None
    if not quantity.is_finite() or quantity <= 0:
        raise InvalidQuantityError(value)
    return quantity


def draw_from_lot(lot: StockLotModel, quantity: Decimal) -> None:
    """Decrement a lot's remaining quantity; never below zero."""
    if quantity > lot.remaining_quantity:
        logger.error(
            "stock_lot_overdraw_rejected",
            extra={
                "stock_lot_id": str(lot.id),
                "remaining": str(lot.remaining_quantity),
                "requested": str(quantity),
            },
        )
        raise LotOverdrawnError(
            lot_id=str(lot.id),
            remaining=lot.remaining_quantity,
            requested=quantity,
        )
    lot.remaining_quantity = normalize_stored(lot.remaining_quantity - quantity)


def return_to_lot(lot: StockLotModel, quantity: Decimal) -> None:
    """Increment a lot's remaining quantity; never above its initial quantity."""
    if lot.remaining_quantity + quantity > lot.initial_quantity:
        logger.error(
            "stock_lot_over_restore_rejected",
            extra={
                "stock_lot_id": str(lot.id),
                "remaining": str(lot.remaining_quantity),
                "restoring": str(quantity),
                "initial": str(lot.initial_quantity),
            },
        )
        raise LotOverRestoredError(
            lot_id=str(lot.id),
            remaining=lot.remaining_quantity,
            restoring=quantity,
            initial=lot.initial_quantity,
        )
    lot.remaining_quantity = normalize_stored(lot.remaining_quantity + quantity)


class FifoCostingService(BaseService[StockLotModel]):
    """
    FIFO consumption and restoration for sale lines.

    Contract:
        Receives Session (and optionally CostingConfig and Clock) via
        constructor injection.  Only flushes.
    Guarantees:
        - ``calculate`` performs no writes.
        - ``consume`` writes one StockLotConsumption per lot drawn and never
          raises for insufficient stock.
        - ``restore`` leaves no consumption rows for the line.
    Non-goals:
        - Does not recalculate later sales; see RecalculationService.
        - Does not maintain product.cost.
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
    # Product access
    # ------------------------------------------------------------------

    def get_product(self, product_id: UUID, lock: bool = False) -> ProductModel:
        """
        Load a product, optionally taking the per-product lock.

        Raises:
            ProductNotFoundError: If the product does not exist.
        """
        product = self._lock_row(
            ProductModel,
            product_id,
            lock=lock and self.config.lock_product_rows,
        )
        if product is None:
            logger.warning("product_not_found", extra={"product_id": str(product_id)})
            raise ProductNotFoundError(str(product_id))
        return product

    def lock_product(self, product_id: UUID) -> ProductModel:
        """Take the per-product lock that serializes lot mutation."""
        return self.get_product(product_id, lock=True)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _eligible_lot_rows(
        self,
        product_id: UUID,
        as_of_date: date,
        warehouse_id: str | None,
    ) -> list[StockLotModel]:
        stmt = select(StockLotModel).where(
            StockLotModel.product_id == product_id,
            StockLotModel.remaining_quantity > 0,
            StockLotModel.lot_date <= as_of_date,
        )
        if warehouse_id is not None:
            stmt = stmt.where(StockLotModel.warehouse_id == warehouse_id)
        stmt = stmt.order_by(
            StockLotModel.lot_date,
            StockLotModel.created_at,
            StockLotModel.id,
        )
        return list(self.session.execute(stmt).scalars().all())

    @staticmethod
    def _snapshot(lot: StockLotModel) -> LotSnapshot:
        return LotSnapshot(
            lot_id=lot.id,
            lot_date=lot.lot_date,
            created_at=lot.created_at,
            unit_cost=lot.unit_cost,
            remaining_quantity=lot.remaining_quantity,
            warehouse_id=lot.warehouse_id,
        )

    def plan_with_lots(
        self,
        product_id: UUID,
        quantity: Decimal,
        as_of_date: date,
        warehouse_id: str | None,
    ) -> tuple[ConsumptionPlan, dict[UUID, StockLotModel]]:
        """Plan a draw and return the lot rows it refers to, keyed by id."""
        rows = self._eligible_lot_rows(product_id, as_of_date, warehouse_id)
        plan = plan_fifo_consumption(
            [self._snapshot(lot) for lot in rows],
            quantity,
            as_of_date,
            warehouse_id,
        )
        return plan, {lot.id: lot for lot in rows}

    def calculate(
        self,
        product_id: UUID,
        quantity_needed: Decimal | int | str,
        as_of_date: date,
        warehouse_id: str | None = None,
    ) -> ConsumptionPlan:
        """
        Project which lots a consumption would draw from.  No writes.

        Raises:
            InvalidQuantityError: If quantity_needed is not positive.
            ProductNotFoundError: If the product does not exist.
        """
        quantity = as_quantity(quantity_needed)
        self.get_product(product_id)
        plan, _ = self.plan_with_lots(product_id, quantity, as_of_date, warehouse_id)
        return plan

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def consume(
        self,
        product_id: UUID,
        quantity_needed: Decimal | int | str,
        consuming_line_id: UUID,
        as_of_date: date,
        warehouse_id: str | None = None,
    ) -> ConsumptionResult:
        """
        Consume stock FIFO for a sale line.

        Preconditions:
            The line has no consumption rows (restore first on edit).
        Postconditions:
            Each drawn lot is decremented by its draw and one
            StockLotConsumption row exists per draw.  Any shortfall is
            priced at product.cost and described by exactly one warning.
        """
        quantity = as_quantity(quantity_needed)

        with LogContext.bind(product_id=product_id, document_id=consuming_line_id):
            product = self.lock_product(product_id)

            logger.info(
                "fifo_consume_started",
                extra={
                    "quantity": str(quantity),
                    "as_of_date": as_of_date.isoformat(),
                    "warehouse_id": warehouse_id,
                },
            )

            plan, lots_by_id = self.plan_with_lots(product_id, quantity, as_of_date, warehouse_id)

            for draw in plan.draws:
                lot = lots_by_id[draw.lot_id]
                draw_from_lot(lot, draw.quantity)
                self.session.add(
                    StockLotConsumptionModel(
                        stock_lot_id=lot.id,
                        invoice_line_id=consuming_line_id,
                        quantity_consumed=draw.quantity,
                        unit_cost=draw.unit_cost,
                        total_cost=normalize_stored(draw.cost),
                    )
                )

            pricing = price_shortfall(
                plan,
                product_label=product.name or str(product_id),
                fallback_unit_cost=product.cost,
                decimal_places=self.config.money_decimal_places,
            )
            self.session.flush()

            total_cogs = plan.total_cost + pricing.shortfall_cost

            if pricing.used_fallback_cost:
                logger.warning(
                    "fifo_shortfall_costed_at_fallback",
                    extra={
                        "shortfall": str(plan.shortfall),
                        "available_quantity": str(plan.available_quantity),
                        "fallback_unit_cost": str(pricing.fallback_unit_cost),
                    },
                )

            logger.info(
                "fifo_consume_completed",
                extra={
                    "lots_drawn": len(plan.draws),
                    "total_cogs": str(total_cogs),
                    "shortfall": str(plan.shortfall),
                },
            )

        return ConsumptionResult(
            plan=plan,
            total_cogs=total_cogs,
            insufficient_stock=plan.insufficient_stock,
            shortfall=plan.shortfall,
            available_quantity=plan.available_quantity,
            used_fallback_cost=pricing.used_fallback_cost,
            fallback_unit_cost=pricing.fallback_unit_cost,
            warnings=pricing.warnings,
        )

    def restore(self, consuming_line_id: UUID) -> Decimal:
        """
        Reverse every consumption of a sale line.

        Returns:
            Total quantity returned to lots (zero when the line had none).
        """
        rows = list(
            self.session.execute(
                select(StockLotConsumptionModel).where(
                    StockLotConsumptionModel.invoice_line_id == consuming_line_id
                )
            ).scalars().all()
        )
        if not rows:
            return ZERO

        product_ids = {row.stock_lot.product_id for row in rows}
        for product_id in sorted(product_ids, key=str):
            self.lock_product(product_id)

        restored = ZERO
        for row in rows:
            return_to_lot(row.stock_lot, row.quantity_consumed)
            restored += row.quantity_consumed
            self.session.delete(row)
        self.session.flush()

        logger.info(
            "fifo_restore_completed",
            extra={
                "invoice_line_id": str(consuming_line_id),
                "rows_removed": len(rows),
                "quantity_restored": str(restored),
            },
        )
        return restored

    # ------------------------------------------------------------------
    # Sale-line helpers
    # ------------------------------------------------------------------

    def get_sale_line(self, line_id: UUID) -> SalesInvoiceLineModel:
        line = self.session.get(SalesInvoiceLineModel, line_id)
        if line is None:
            raise ConsumingLineNotFoundError(str(line_id), "Sales invoice")
        return line

    def cost_sale_line(self, line_id: UUID) -> ConsumptionResult:
        """
        Consume stock for a sale line and write its cost_of_goods_sold.

        A line with quantity <= 0 draws nothing: COGS 0, no ledger rows,
        no warning.
        """
        line = self.get_sale_line(line_id)
        if line.quantity <= 0:
            logger.info(
                "sale_line_nothing_to_consume",
                extra={"invoice_line_id": str(line.id), "quantity": str(line.quantity)},
            )
            line.cost_of_goods_sold = ZERO
            self.session.flush()
            return ConsumptionResult(
                plan=ConsumptionPlan.empty(line.quantity),
                total_cogs=ZERO,
                insufficient_stock=False,
                shortfall=ZERO,
                available_quantity=ZERO,
                used_fallback_cost=False,
                fallback_unit_cost=None,
                warnings=(),
            )

        invoice = line.invoice
        result = self.consume(
            line.product_id,
            line.quantity,
            line.id,
            invoice.issue_date,
            invoice.warehouse_id,
        )
        line.cost_of_goods_sold = normalize_stored(result.total_cogs)
        self.session.flush()
        return result

    def recost_sale_line(self, line_id: UUID) -> ConsumptionResult:
        """Restore then re-consume a sale line after it was edited."""
        self.get_sale_line(line_id)
        self.restore(line_id)
        return self.cost_sale_line(line_id)

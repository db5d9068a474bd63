"""
costing_services.recalculation_service -- Retroactive FIFO recalculation.

Responsibility:
    When a transaction is inserted, edited, or deleted with a date earlier
    than transactions that already consumed stock, rebuild the affected slice
    of the consumption ledger so every later line is costed as if events had
    arrived in date order, and record each COGS change in the audit trail.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Cutoff classification, lot reset, and replay order are pure functions in
    costing_engines.replay.  Sale lines are replayed through
    FifoCostingService, debit-note lines through ReturnsService.

Invariants enforced:
    - Cutoff: from_date is inclusive on the replay side.  A consuming line
      dated before from_date keeps its consumption rows untouched.
    - Replay order: (transaction date, line created_at, line id), across sale
      and debit-note lines together.
    - Per-product serialization: the product row stays locked FOR UPDATE for
      the whole recalculation.
    - Determinism: a second run with no intervening writes produces the same
      lot state, consumption rows, and COGS, and appends no audit entries.

Failure modes:
    - ProductNotFoundError for an unknown product.
    - InsufficientStockError when a replayed debit note can no longer be
      covered; the whole recalculation is abandoned with it.
    - RecalculationTimeoutError when the configured time budget is spent.
    In every case the service has only flushed; the caller's rollback
    discards all of it.

Audit relevance:
    Each replayed sale line whose stored COGS changed gets one append-only
    CostAuditLog row (old, new, delta, reason, triggered_by).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import delete, select, text
from sqlalchemy.orm import Session

from costing_config.schema import CostingConfig
from costing_engines.replay import (
    ConsumingKind,
    ConsumingLine,
    HistoricalConsumption,
    LotBaseline,
    recalculation_start_date,
    replay_order,
    reset_remaining_quantities,
)
from costing_kernel.db.engine import is_postgres
from costing_kernel.db.types import ZERO, normalize_stored
from costing_kernel.domain.clock import Clock
from costing_kernel.exceptions import RecalculationTimeoutError
from costing_kernel.logging_config import LogContext, get_logger
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
from costing_kernel.models.stock_lot import StockLotModel
from costing_kernel.selectors.stock_selector import StockSelector
from costing_kernel.services.base import BaseService
from costing_services.fifo_service import FifoCostingService
from costing_services.returns_service import ReturnsService

logger = get_logger("services.recalculation")


@dataclass(frozen=True, slots=True)
class RecalculationSummary:
    """What one product's recalculation did."""

    product_id: UUID
    from_date: date
    reason: str
    skipped: bool
    sale_lines_replayed: int = 0
    debit_note_lines_replayed: int = 0
    audit_entries: int = 0
    total_cogs_change: Decimal = ZERO
    warnings: tuple[str, ...] = field(default_factory=tuple)
    elapsed_seconds: float = 0.0

    @property
    def lines_replayed(self) -> int:
        return self.sale_lines_replayed + self.debit_note_lines_replayed


class RecalculationService(BaseService[StockLotModel]):
    """
    Rebuilds the consumption ledger of one product from a date onwards.

    Contract:
        Receives Session (and optionally CostingConfig, Clock, and the
        collaborating services) via constructor injection.  Only flushes.
    Guarantees:
        - ``recalculate_from_date`` is all-or-nothing within the caller's
          transaction.
        - ``is_backdated`` performs no writes.
    Non-goals:
        - Does not decide when to recalculate after a document edit beyond
          the helpers below; the document workflow calls it.
    """

    def __init__(
        self,
        session: Session,
        config: CostingConfig | None = None,
        clock: Clock | None = None,
        fifo: FifoCostingService | None = None,
        returns: ReturnsService | None = None,
    ):
        super().__init__(session, clock)
        self.config = config or CostingConfig()
        self.fifo = fifo or FifoCostingService(session, self.config, self._clock)
        self.returns = returns or ReturnsService(
            session, self.config, self._clock, fifo=self.fifo
        )
        self._selector = StockSelector(session)

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    def _sale_lines_stmt(self, product_id: UUID):
        return (
            select(
                SalesInvoiceLineModel.id,
                SalesInvoiceModel.issue_date,
                SalesInvoiceLineModel.created_at,
            )
            .join(SalesInvoiceModel, SalesInvoiceLineModel.invoice_id == SalesInvoiceModel.id)
            .where(SalesInvoiceLineModel.product_id == product_id)
        )

    def _debit_lines_stmt(self, product_id: UUID):
        return (
            select(
                DebitNoteLineModel.id,
                DebitNoteModel.issue_date,
                DebitNoteLineModel.created_at,
            )
            .join(DebitNoteModel, DebitNoteLineModel.debit_note_id == DebitNoteModel.id)
            .where(DebitNoteLineModel.product_id == product_id)
        )

    def is_backdated(self, product_id: UUID, transaction_date: date) -> bool:
        """True iff a sale or debit-note line for the product is dated after transaction_date."""
        sale = self.session.execute(
            self._sale_lines_stmt(product_id)
            .where(SalesInvoiceModel.issue_date > transaction_date)
            .limit(1)
        ).first()
        if sale is not None:
            return True
        debit = self.session.execute(
            self._debit_lines_stmt(product_id)
            .where(DebitNoteModel.issue_date > transaction_date)
            .limit(1)
        ).first()
        return debit is not None

    @staticmethod
    def recalculation_start_date(old_date: date | None, new_date: date) -> date:
        return recalculation_start_date(old_date, new_date)

    # ------------------------------------------------------------------
    # Recalculation
    # ------------------------------------------------------------------

    def _consuming_lines_from(self, product_id: UUID, from_date: date) -> list[ConsumingLine]:
        lines = [
            ConsumingLine(line_id, ConsumingKind.SALE, issue_date, created_at)
            for line_id, issue_date, created_at in self.session.execute(
                self._sale_lines_stmt(product_id).where(SalesInvoiceModel.issue_date >= from_date)
            ).all()
        ]
        if self.config.replay_debit_notes:
            lines.extend(
                ConsumingLine(line_id, ConsumingKind.DEBIT_NOTE, issue_date, created_at)
                for line_id, issue_date, created_at in self.session.execute(
                    self._debit_lines_stmt(product_id).where(DebitNoteModel.issue_date >= from_date)
                ).all()
            )
        return replay_order(lines, from_date)

    def _history(self, product_id: UUID) -> list[HistoricalConsumption]:
        sale_edges = self.session.execute(
            select(
                StockLotConsumptionModel.stock_lot_id,
                StockLotConsumptionModel.invoice_line_id,
                SalesInvoiceModel.issue_date,
                StockLotConsumptionModel.quantity_consumed,
            )
            .join(StockLotModel, StockLotModel.id == StockLotConsumptionModel.stock_lot_id)
            .join(
                SalesInvoiceLineModel,
                SalesInvoiceLineModel.id == StockLotConsumptionModel.invoice_line_id,
            )
            .join(SalesInvoiceModel, SalesInvoiceModel.id == SalesInvoiceLineModel.invoice_id)
            .where(StockLotModel.product_id == product_id)
        ).all()
        debit_edges = self.session.execute(
            select(
                DebitNoteLotConsumptionModel.stock_lot_id,
                DebitNoteLotConsumptionModel.debit_note_line_id,
                DebitNoteModel.issue_date,
                DebitNoteLotConsumptionModel.quantity_returned,
            )
            .join(StockLotModel, StockLotModel.id == DebitNoteLotConsumptionModel.stock_lot_id)
            .join(
                DebitNoteLineModel,
                DebitNoteLineModel.id == DebitNoteLotConsumptionModel.debit_note_line_id,
            )
            .join(DebitNoteModel, DebitNoteModel.id == DebitNoteLineModel.debit_note_id)
            .where(StockLotModel.product_id == product_id)
        ).all()

        history = [
            HistoricalConsumption(lot_id, line_id, ConsumingKind.SALE, issued, qty)
            for lot_id, line_id, issued, qty in sale_edges
        ]
        history.extend(
            HistoricalConsumption(lot_id, line_id, ConsumingKind.DEBIT_NOTE, issued, qty)
            for lot_id, line_id, issued, qty in debit_edges
        )
        return history

    def _apply_statement_timeout(self) -> None:
        if not is_postgres(self.session):
            return
        millis = int(self.config.recalculation_timeout_seconds * 1000)
        self.session.execute(text(f"SET LOCAL statement_timeout = {millis}"))

    def _check_budget(self, product_id: UUID, started: float) -> None:
        elapsed = self._clock.monotonic() - started
        limit = self.config.recalculation_timeout_seconds
        if elapsed > limit:
            logger.error(
                "recalculation_timed_out",
                extra={"elapsed_seconds": elapsed, "limit_seconds": limit},
            )
            raise RecalculationTimeoutError(str(product_id), elapsed, limit)

    def recalculate_from_date(
        self,
        product_id: UUID,
        from_date: date,
        reason: str | None = None,
        triggered_by: str | None = None,
    ) -> RecalculationSummary:
        """
        Rebuild every consumption on or after from_date, in date order.

        Steps:
            1. Lock the product; exit early when nothing consumes stock on
               or after from_date.
            2. Reset each lot to initial minus consumption by lines dated
               before from_date.
            3. Delete the consumption rows of every line on or after
               from_date.
            4. Replay those lines in (date, created_at, id) order.
            5. Append an audit entry for every sale line whose COGS moved.
        """
        reason = reason or self.config.default_change_reason
        started = self._clock.monotonic()

        with LogContext.bind(product_id=product_id):
            self.fifo.lock_product(product_id)

            forward = self._consuming_lines_from(product_id, from_date)
            if not forward:
                logger.info(
                    "recalculation_skipped",
                    extra={"from_date": from_date.isoformat(), "reason": reason},
                )
                return RecalculationSummary(
                    product_id=product_id,
                    from_date=from_date,
                    reason=reason,
                    skipped=True,
                )

            logger.info(
                "recalculation_started",
                extra={
                    "from_date": from_date.isoformat(),
                    "reason": reason,
                    "triggered_by": triggered_by,
                    "lines": len(forward),
                },
            )
            self._apply_statement_timeout()

            # Reset lot state
            lots = list(
                self.session.execute(
                    select(StockLotModel).where(StockLotModel.product_id == product_id)
                ).scalars().all()
            )
            pinned = (
                frozenset()
                if self.config.replay_debit_notes
                else frozenset({ConsumingKind.DEBIT_NOTE})
            )
            reset = reset_remaining_quantities(
                [LotBaseline(lot.id, lot.lot_date, lot.initial_quantity) for lot in lots],
                self._history(product_id),
                from_date,
                pinned_kinds=pinned,
            )
            for lot in lots:
                lot.remaining_quantity = normalize_stored(reset[lot.id])

            # Purge forward consumption rows
            sale_ids = [line.line_id for line in forward if line.kind is ConsumingKind.SALE]
            debit_ids = [line.line_id for line in forward if line.kind is ConsumingKind.DEBIT_NOTE]
            if sale_ids:
                self.session.execute(
                    delete(StockLotConsumptionModel)
                    .where(StockLotConsumptionModel.invoice_line_id.in_(sale_ids))
                    .execution_options(synchronize_session="fetch")
                )
            if debit_ids:
                self.session.execute(
                    delete(DebitNoteLotConsumptionModel)
                    .where(DebitNoteLotConsumptionModel.debit_note_line_id.in_(debit_ids))
                    .execution_options(synchronize_session="fetch")
                )
            self.session.flush()

            old_cogs: dict[UUID, Decimal] = {}
            if sale_ids:
                rows = self.session.execute(
                    select(
                        SalesInvoiceLineModel.id,
                        SalesInvoiceLineModel.cost_of_goods_sold,
                    ).where(SalesInvoiceLineModel.id.in_(sale_ids))
                ).all()
                old_cogs = {line_id: normalize_stored(cogs) for line_id, cogs in rows}

            # Replay
            warnings: list[str] = []
            for line in forward:
                self._check_budget(product_id, started)
                if line.kind is ConsumingKind.SALE:
                    result = self.fifo.cost_sale_line(line.line_id)
                    warnings.extend(result.warnings)
                else:
                    self.returns.cost_debit_note_line(line.line_id)

            # Audit
            audit_entries = 0
            total_change = ZERO
            for line_id in sale_ids:
                line = self.session.get(SalesInvoiceLineModel, line_id)
                new = normalize_stored(line.cost_of_goods_sold)
                old = old_cogs[line_id]
                if new == old:
                    continue
                self.session.add(
                    CostAuditLogModel(
                        product_id=product_id,
                        invoice_line_id=line_id,
                        old_cogs=old,
                        new_cogs=new,
                        change_amount=new - old,
                        change_reason=reason,
                        triggered_by=triggered_by,
                    )
                )
                audit_entries += 1
                total_change += new - old
            self.session.flush()

            elapsed = self._clock.monotonic() - started
            summary = RecalculationSummary(
                product_id=product_id,
                from_date=from_date,
                reason=reason,
                skipped=False,
                sale_lines_replayed=len(sale_ids),
                debit_note_lines_replayed=len(debit_ids),
                audit_entries=audit_entries,
                total_cogs_change=total_change,
                warnings=tuple(warnings),
                elapsed_seconds=elapsed,
            )
            logger.info(
                "recalculation_completed",
                extra={
                    "sale_lines_replayed": summary.sale_lines_replayed,
                    "debit_note_lines_replayed": summary.debit_note_lines_replayed,
                    "audit_entries": audit_entries,
                    "total_cogs_change": str(total_change),
                    "elapsed_seconds": round(elapsed, 3),
                },
            )
        return summary

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def recalculate_if_backdated(
        self,
        product_id: UUID,
        transaction_date: date,
        reason: str | None = None,
        triggered_by: str | None = None,
    ) -> RecalculationSummary | None:
        """Recalculate from transaction_date only if later lines exist."""
        if not self.is_backdated(product_id, transaction_date):
            return None
        return self.recalculate_from_date(product_id, transaction_date, reason, triggered_by)

    def recalculate_after_receipt(
        self,
        product_id: UUID,
        lot_date: date,
        triggered_by: str | None = None,
    ) -> RecalculationSummary | None:
        """
        Follow-up after stock was received (purchase or opening stock).

        Backdated receipt: recalculate from the lot date.  Otherwise, if
        earlier sales were costed at zero for lack of stock, recalculate from
        the earliest of them so the new stock can cover them.
        """
        if self.is_backdated(product_id, lot_date):
            return self.recalculate_from_date(
                product_id,
                lot_date,
                CostChangeReason.BACKDATED_PURCHASE,
                triggered_by,
            )

        zero_cogs_date = self._selector.earliest_zero_cogs_date(product_id)
        if zero_cogs_date is not None:
            return self.recalculate_from_date(
                product_id,
                zero_cogs_date,
                CostChangeReason.ZERO_COGS_FIX,
                triggered_by,
            )
        return None

    def recalculate_all(
        self,
        product_ids: list[UUID] | None = None,
        from_date: date = date.min,
        reason: str | None = None,
        triggered_by: str | None = None,
    ) -> list[RecalculationSummary]:
        """
        Rebuild every product that has consuming lines.

        Products are processed one at a time in id order; the first failure
        propagates and the caller decides whether to roll back.
        """
        if product_ids is None:
            found = set(
                self.session.execute(select(SalesInvoiceLineModel.product_id).distinct())
                .scalars()
                .all()
            )
            found.update(
                self.session.execute(select(DebitNoteLineModel.product_id).distinct())
                .scalars()
                .all()
            )
            product_ids = sorted(found, key=str)

        logger.info(
            "recalculate_all_started",
            extra={"product_count": len(product_ids), "from_date": from_date.isoformat()},
        )
        summaries = [
            self.recalculate_from_date(product_id, from_date, reason, triggered_by)
            for product_id in product_ids
        ]
        logger.info(
            "recalculate_all_completed",
            extra={
                "product_count": len(summaries),
                "audit_entries": sum(s.audit_entries for s in summaries),
            },
        )
        return summaries

"""
Tests for RecalculationService: backdate detection, retroactive replay,
cost audit entries, and the receipt / batch triggers.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from costing_config import CostingConfig
from costing_kernel.db.types import normalize_stored
from costing_kernel.domain.clock import DeterministicClock
from costing_kernel.exceptions import (
    InsufficientStockError,
    ProductNotFoundError,
    RecalculationTimeoutError,
)
from costing_kernel.models import (
    CostAuditLogModel,
    DebitNoteLotConsumptionModel,
    StockLotConsumptionModel,
)
from costing_services import RecalculationService


def D(value) -> Decimal:
    return normalize_stored(Decimal(value))


def _audit(session, line_id):
    return session.execute(
        select(CostAuditLogModel).where(CostAuditLogModel.invoice_line_id == line_id)
    ).scalars().all()


def _ledger(session, product_lots):
    """Snapshot of lot state and consumption rows for comparison."""
    lot_state = {}
    for lot in product_lots:
        session.refresh(lot)
        lot_state[lot.id] = D(lot.remaining_quantity)
    rows = session.execute(select(StockLotConsumptionModel)).scalars().all()
    edges = sorted(
        (str(r.stock_lot_id), str(r.invoice_line_id), D(r.quantity_consumed), D(r.total_cost))
        for r in rows
    )
    return lot_state, edges


@pytest.fixture
def backdated_scenario(session, fifo, make_product, make_lot, make_sale):
    """
    Lot A Jan 1: 10 @ 5.  Sale 1 Jan 10: 4.  Sale 2 Jan 20: 4.
    Then Sale 0 is inserted on Jan 5 for 3 and costed as of the moment.
    """
    product = make_product(name="Widget", cost="2")
    lot = make_lot(product, "10", "5", date(2024, 1, 1))
    sale1 = make_sale(product, "4", date(2024, 1, 10))
    fifo.cost_sale_line(sale1.id)
    sale2 = make_sale(product, "4", date(2024, 1, 20))
    fifo.cost_sale_line(sale2.id)
    sale0 = make_sale(product, "3", date(2024, 1, 5))
    fifo.cost_sale_line(sale0.id)
    return product, lot, sale0, sale1, sale2


class TestIsBackdated:

    def test_true_when_later_sale_exists(self, recalc, make_product, make_sale):
        product = make_product()
        make_sale(product, "1", date(2024, 1, 10))

        assert recalc.is_backdated(product.id, date(2024, 1, 9))

    def test_false_on_same_day(self, recalc, make_product, make_sale):
        product = make_product()
        make_sale(product, "1", date(2024, 1, 10))

        assert not recalc.is_backdated(product.id, date(2024, 1, 10))

    def test_debit_notes_count(self, recalc, make_product, make_debit_note):
        product = make_product()
        make_debit_note(product, "1", date(2024, 1, 10))

        assert recalc.is_backdated(product.id, date(2024, 1, 1))

    def test_other_products_do_not_count(self, recalc, make_product, make_sale):
        product = make_product(name="A")
        other = make_product(name="B")
        make_sale(other, "1", date(2024, 1, 10))

        assert not recalc.is_backdated(product.id, date(2024, 1, 1))


class TestRecalculateFromDate:

    def test_backdated_sale_reorders_costs(self, session, recalc, backdated_scenario):
        product, lot, sale0, sale1, sale2 = backdated_scenario
        assert recalc.is_backdated(product.id, date(2024, 1, 5))

        summary = recalc.recalculate_from_date(
            product.id, date(2024, 1, 5), triggered_by="invoice edit"
        )

        for line in (sale0, sale1, sale2):
            session.refresh(line)
        assert D(sale0.cost_of_goods_sold) == D("15")
        assert D(sale1.cost_of_goods_sold) == D("20")
        # 3 units from lot A at 5 plus 1 unit at the fallback cost of 2
        assert D(sale2.cost_of_goods_sold) == D("17")
        session.refresh(lot)
        assert D(lot.remaining_quantity) == D("0")

        assert not summary.skipped
        assert summary.sale_lines_replayed == 3
        assert summary.audit_entries == 2
        assert len(summary.warnings) == 1

    def test_audit_entries_record_old_and_new_cogs(self, session, recalc, backdated_scenario):
        product, _lot, sale0, sale1, sale2 = backdated_scenario

        recalc.recalculate_from_date(product.id, date(2024, 1, 5), triggered_by="invoice edit")

        (entry,) = _audit(session, sale2.id)
        assert D(entry.old_cogs) == D("20")
        assert D(entry.new_cogs) == D("17")
        assert D(entry.change_amount) == D("-3")
        assert entry.change_reason == "recalculation"
        assert entry.triggered_by == "invoice edit"

        (entry0,) = _audit(session, sale0.id)
        assert D(entry0.old_cogs) == D("12")
        assert D(entry0.new_cogs) == D("15")

        assert _audit(session, sale1.id) == []

    def test_replay_is_idempotent(self, session, recalc, backdated_scenario):
        product, lot, *_ = backdated_scenario
        recalc.recalculate_from_date(product.id, date(2024, 1, 5))
        first = _ledger(session, [lot])

        summary = recalc.recalculate_from_date(product.id, date(2024, 1, 5))

        assert _ledger(session, [lot]) == first
        assert summary.audit_entries == 0
        assert summary.total_cogs_change == Decimal("0")

    def test_before_cutoff_lines_are_untouched(self, session, recalc, backdated_scenario):
        product, _lot, sale0, sale1, _sale2 = backdated_scenario
        recalc.recalculate_from_date(product.id, date(2024, 1, 5))
        before = set(session.execute(
            select(StockLotConsumptionModel.id).where(
                StockLotConsumptionModel.invoice_line_id == sale0.id
            )
        ).scalars().all())

        recalc.recalculate_from_date(product.id, date(2024, 1, 10))

        after = set(session.execute(
            select(StockLotConsumptionModel.id).where(
                StockLotConsumptionModel.invoice_line_id == sale0.id
            )
        ).scalars().all())
        assert before == after

    def test_skipped_when_nothing_on_or_after(self, recalc, make_product, make_sale):
        product = make_product()
        make_sale(product, "1", date(2024, 1, 1))

        summary = recalc.recalculate_from_date(product.id, date(2024, 2, 1))

        assert summary.skipped
        assert summary.lines_replayed == 0

    def test_zero_quantity_line_is_replayed_at_zero_cost(
        self, session, recalc, fifo, make_product, make_lot, make_sale
    ):
        product = make_product()
        make_lot(product, "10", "5", date(2024, 1, 1))
        empty = make_sale(product, "0", date(2024, 1, 10))
        later = make_sale(product, "4", date(2024, 1, 20))
        fifo.cost_sale_line(later.id)

        summary = recalc.recalculate_from_date(product.id, date(2024, 1, 5))

        session.refresh(empty)
        session.refresh(later)
        assert D(empty.cost_of_goods_sold) == D("0")
        assert D(later.cost_of_goods_sold) == D("20")
        assert session.execute(
            select(StockLotConsumptionModel).where(
                StockLotConsumptionModel.invoice_line_id == empty.id
            )
        ).scalars().all() == []
        assert summary.sale_lines_replayed == 2
        assert summary.audit_entries == 0
        assert summary.warnings == ()

    def test_unknown_product(self, recalc):
        with pytest.raises(ProductNotFoundError):
            recalc.recalculate_from_date(uuid4(), date(2024, 1, 1))

    def test_custom_reason(self, session, recalc, backdated_scenario):
        product, _lot, _s0, _s1, sale2 = backdated_scenario

        recalc.recalculate_from_date(product.id, date(2024, 1, 5), reason="manual_fix")

        assert _audit(session, sale2.id)[0].change_reason == "manual_fix"

    def test_logs_start_and_completion(self, recalc, backdated_scenario, captured_logs):
        product, *_ = backdated_scenario

        recalc.recalculate_from_date(product.id, date(2024, 1, 5))

        messages = [r["message"] for r in captured_logs()]
        assert "recalculation_started" in messages
        assert "recalculation_completed" in messages


class TestDebitNoteReplay:

    def test_debit_note_replayed_in_order(
        self, session, recalc, fifo, returns, make_product, make_lot, make_sale, make_debit_note
    ):
        product = make_product(cost="1")
        lot = make_lot(product, "10", "5", date(2024, 1, 1))
        sale = make_sale(product, "6", date(2024, 1, 10))
        fifo.cost_sale_line(sale.id)
        debit = make_debit_note(product, "2", date(2024, 1, 15))
        returns.cost_debit_note_line(debit.id)
        backdated = make_sale(product, "2", date(2024, 1, 5))

        summary = recalc.recalculate_from_date(product.id, date(2024, 1, 5))

        assert summary.debit_note_lines_replayed == 1
        session.refresh(lot)
        session.refresh(debit)
        session.refresh(backdated)
        assert D(lot.remaining_quantity) == D("0")
        assert D(debit.total_cost) == D("10")
        assert D(backdated.cost_of_goods_sold) == D("10")

    def test_debit_note_shortfall_aborts_recalculation(
        self, recalc, fifo, returns, make_product, make_lot, make_sale, make_debit_note
    ):
        product = make_product(cost="1")
        make_lot(product, "10", "5", date(2024, 1, 1))
        sale = make_sale(product, "6", date(2024, 1, 10))
        fifo.cost_sale_line(sale.id)
        debit = make_debit_note(product, "3", date(2024, 1, 15))
        returns.cost_debit_note_line(debit.id)
        make_sale(product, "2", date(2024, 1, 5))

        with pytest.raises(InsufficientStockError) as exc_info:
            recalc.recalculate_from_date(product.id, date(2024, 1, 5))

        assert exc_info.value.available == Decimal("2")
        assert exc_info.value.shortfall == Decimal("1")

    def test_debit_notes_can_be_left_in_place(
        self, session, fifo, returns, make_product, make_lot, make_sale, make_debit_note
    ):
        product = make_product()
        lot = make_lot(product, "10", "5", date(2024, 1, 1))
        debit = make_debit_note(product, "3", date(2024, 1, 15))
        returns.cost_debit_note_line(debit.id)
        sale = make_sale(product, "4", date(2024, 1, 20))
        fifo.cost_sale_line(sale.id)
        make_sale(product, "2", date(2024, 1, 5))
        service = RecalculationService(session, CostingConfig(replay_debit_notes=False))

        summary = service.recalculate_from_date(product.id, date(2024, 1, 5))

        assert summary.debit_note_lines_replayed == 0
        session.refresh(lot)
        assert D(lot.remaining_quantity) == D("1")
        rows = session.execute(
            select(DebitNoteLotConsumptionModel).where(
                DebitNoteLotConsumptionModel.debit_note_line_id == debit.id
            )
        ).scalars().all()
        assert [D(r.quantity_returned) for r in rows] == [D("3")]


class TestTimeBudget:

    def test_timeout_raises(self, session, backdated_scenario):
        product, *_ = backdated_scenario
        service = RecalculationService(
            session,
            CostingConfig(recalculation_timeout_seconds=1),
            clock=DeterministicClock(auto_advance=5),
        )

        with pytest.raises(RecalculationTimeoutError) as exc_info:
            service.recalculate_from_date(product.id, date(2024, 1, 5))

        assert exc_info.value.limit_seconds == 1

    def test_within_budget(self, session, backdated_scenario):
        product, *_ = backdated_scenario
        service = RecalculationService(
            session,
            CostingConfig(recalculation_timeout_seconds=100),
            clock=DeterministicClock(auto_advance=1),
        )

        summary = service.recalculate_from_date(product.id, date(2024, 1, 5))

        assert not summary.skipped


class TestTriggers:

    def test_recalculate_if_backdated(self, recalc, backdated_scenario):
        product, *_ = backdated_scenario

        assert recalc.recalculate_if_backdated(product.id, date(2024, 2, 1)) is None
        assert recalc.recalculate_if_backdated(product.id, date(2024, 1, 5)) is not None

    def test_backdated_purchase(self, session, recalc, fifo, make_product, make_lot, make_sale):
        product = make_product(cost="0")
        sale = make_sale(product, "2", date(2024, 1, 10))
        fifo.cost_sale_line(sale.id)
        lot = make_lot(product, "5", "4", date(2024, 1, 5))

        summary = recalc.recalculate_after_receipt(product.id, lot.lot_date, triggered_by="purchase")

        assert summary.reason == "backdated_purchase"
        session.refresh(sale)
        assert D(sale.cost_of_goods_sold) == D("8")
        assert _audit(session, sale.id)[0].change_reason == "backdated_purchase"

    def test_zero_cogs_fix(self, session, recalc, fifo, make_product, make_lot, make_sale):
        product = make_product(cost="0")
        sale = make_sale(product, "2", date(2024, 1, 10))
        fifo.cost_sale_line(sale.id)
        make_lot(product, "5", "4", date(2024, 1, 10))

        summary = recalc.recalculate_after_receipt(product.id, date(2024, 1, 10))

        assert summary.reason == "zero_cogs_fix"
        session.refresh(sale)
        assert D(sale.cost_of_goods_sold) == D("8")

    def test_receipt_with_nothing_to_fix(self, recalc, make_product, make_lot):
        product = make_product()
        make_lot(product, "5", "4", date(2024, 1, 10))

        assert recalc.recalculate_after_receipt(product.id, date(2024, 1, 10)) is None

    def test_start_date_helper(self, recalc):
        assert recalc.recalculation_start_date(date(2024, 3, 1), date(2024, 1, 1)) == date(2024, 1, 1)


class TestRecalculateAll:

    def test_rebuilds_every_product_with_sales(self, session, recalc, fifo, make_product, make_lot, make_sale):
        a = make_product(name="A")
        b = make_product(name="B")
        make_product(name="Idle")
        for product in (a, b):
            make_lot(product, "5", "3", date(2024, 1, 1))
            line = make_sale(product, "2", date(2024, 1, 2))
            fifo.cost_sale_line(line.id)

        summaries = recalc.recalculate_all(triggered_by="repair")

        assert {s.product_id for s in summaries} == {a.id, b.id}
        assert all(not s.skipped for s in summaries)
        assert sum(s.audit_entries for s in summaries) == 0

    def test_explicit_product_list(self, recalc, make_product):
        product = make_product()

        summaries = recalc.recalculate_all(product_ids=[product.id])

        assert len(summaries) == 1
        assert summaries[0].skipped

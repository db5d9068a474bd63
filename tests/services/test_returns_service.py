"""
Tests for ReturnsService: credit-note lots and debit-note consumption.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from costing_kernel.db.types import normalize_stored
from costing_kernel.exceptions import (
    ConsumingLineNotFoundError,
    InsufficientStockError,
    InvalidQuantityError,
)
from costing_kernel.models import DebitNoteLotConsumptionModel, LotSourceType


def D(value) -> Decimal:
    return normalize_stored(Decimal(value))


def _debit_rows(session):
    return session.execute(select(func.count(DebitNoteLotConsumptionModel.id))).scalar()


class TestDebitNoteConsumption:

    def test_rejects_return_larger_than_stock(self, session, returns, make_product, make_lot):
        product = make_product()
        lot = make_lot(product, "2", "5", date(2024, 1, 1))

        with pytest.raises(InsufficientStockError) as exc_info:
            returns.consume_for_debit_note(product.id, "5", uuid4(), date(2024, 1, 10))

        err = exc_info.value
        assert err.code == "INSUFFICIENT_STOCK"
        assert err.requested == Decimal("5")
        assert err.available == Decimal("2")
        assert err.shortfall == Decimal("3")
        assert str(err) == (
            f"Insufficient stock to process debit note for product {product.id}. "
            "Requested: 5, Available: 2, Shortfall: 3"
        )

        session.refresh(lot)
        assert D(lot.remaining_quantity) == D("2")
        assert _debit_rows(session) == 0

    def test_consumes_oldest_lots_first(self, session, returns, make_product, make_lot):
        product = make_product()
        a = make_lot(product, "3", "5", date(2024, 1, 1))
        b = make_lot(product, "5", "7", date(2024, 1, 2))

        plan = returns.consume_for_debit_note(product.id, "4", uuid4(), date(2024, 1, 10))

        assert D(plan.total_cost) == D("22")
        assert [d.lot_id for d in plan.draws] == [a.id, b.id]
        session.refresh(a)
        session.refresh(b)
        assert D(a.remaining_quantity) == D("0")
        assert D(b.remaining_quantity) == D("4")
        assert _debit_rows(session) == 2

    def test_lots_dated_after_return_are_not_eligible(self, returns, make_product, make_lot):
        product = make_product()
        make_lot(product, "10", "5", date(2024, 2, 1))

        with pytest.raises(InsufficientStockError):
            returns.consume_for_debit_note(product.id, "1", uuid4(), date(2024, 1, 10))

    def test_rejects_non_positive_quantity(self, returns, make_product):
        product = make_product()

        with pytest.raises(InvalidQuantityError):
            returns.consume_for_debit_note(product.id, "0", uuid4(), date(2024, 1, 10))

    def test_logs_rejection(self, returns, make_product, make_lot, captured_logs):
        product = make_product()
        make_lot(product, "1", "5", date(2024, 1, 1))

        with pytest.raises(InsufficientStockError):
            returns.consume_for_debit_note(product.id, "2", uuid4(), date(2024, 1, 10))

        records = [r for r in captured_logs() if r["message"] == "debit_note_insufficient_stock"]
        assert len(records) == 1
        assert records[0]["level"] == "WARNING"


class TestDebitNoteLines:

    def test_cost_debit_note_line_writes_total_cost(
        self, session, returns, make_product, make_lot, make_debit_note
    ):
        product = make_product()
        make_lot(product, "10", "4", date(2024, 1, 1))
        line = make_debit_note(product, "3", date(2024, 1, 5))

        returns.cost_debit_note_line(line.id)

        session.refresh(line)
        assert D(line.total_cost) == D("12")

    def test_zero_quantity_line_returns_nothing(
        self, session, returns, make_product, make_lot, make_debit_note
    ):
        product = make_product()
        make_lot(product, "10", "4", date(2024, 1, 1))
        line = make_debit_note(product, "0", date(2024, 1, 5))

        plan = returns.cost_debit_note_line(line.id)

        assert plan.draws == ()
        session.refresh(line)
        assert D(line.total_cost) == D("0")
        assert _debit_rows(session) == 0

    def test_unknown_line(self, returns):
        with pytest.raises(ConsumingLineNotFoundError):
            returns.get_debit_note_line(uuid4())

    def test_restore_returns_stock(self, session, returns, make_product, make_lot, make_debit_note):
        product = make_product()
        a = make_lot(product, "2", "4", date(2024, 1, 1))
        b = make_lot(product, "5", "6", date(2024, 1, 2))
        line = make_debit_note(product, "4", date(2024, 1, 5))
        returns.cost_debit_note_line(line.id)

        restored = returns.restore_debit_note(line.id)

        assert restored == Decimal("4")
        session.refresh(a)
        session.refresh(b)
        assert D(a.remaining_quantity) == D("2")
        assert D(b.remaining_quantity) == D("5")
        assert _debit_rows(session) == 0

    def test_restore_without_consumption(self, returns):
        assert returns.restore_debit_note(uuid4()) == Decimal("0")


class TestReturnableStock:

    def test_enough_stock(self, returns, make_product, make_lot):
        product = make_product()
        make_lot(product, "4", "1", date(2024, 1, 1))
        make_lot(product, "3", "1", date(2024, 3, 1))

        result = returns.check_returnable_stock(product.id, "7")

        assert result.can_return
        assert result.available == Decimal("7")
        assert result.shortfall == Decimal("0")

    def test_short(self, returns, make_product, make_lot):
        product = make_product()
        make_lot(product, "2", "1", date(2024, 1, 1))

        result = returns.check_returnable_stock(product.id, "5")

        assert not result.can_return
        assert result.shortfall == Decimal("3")

    def test_warehouse_filter(self, returns, make_product, make_lot):
        product = make_product()
        make_lot(product, "4", "1", date(2024, 1, 1), warehouse_id="north")
        make_lot(product, "6", "1", date(2024, 1, 1), warehouse_id="south")

        result = returns.check_returnable_stock(product.id, "5", warehouse_id="north")

        assert result.available == Decimal("4")
        assert not result.can_return


class TestCreditNoteLots:

    def test_explicit_cost_wins(self, returns, make_product):
        product = make_product(cost="9")

        lot = returns.create_credit_note_lot(
            uuid4(), product.id, "2", date(2024, 1, 15), unit_cost="3"
        )

        assert lot.source_type == LotSourceType.CREDIT_NOTE.value
        assert D(lot.unit_cost) == D("3")
        assert D(lot.remaining_quantity) == D("2")

    def test_cost_from_original_sale(self, returns, fifo, make_product, make_lot, make_sale):
        product = make_product(cost="9")
        make_lot(product, "10", "5", date(2024, 1, 1))
        sale = make_sale(product, "4", date(2024, 1, 10))
        fifo.cost_sale_line(sale.id)

        lot = returns.create_credit_note_lot(
            uuid4(), product.id, "2", date(2024, 1, 15), original_invoice_line_id=sale.id
        )

        assert D(lot.unit_cost) == D("5")
        assert lot.lot_date == date(2024, 1, 15)

    def test_falls_back_to_product_cost(self, returns, make_product):
        product = make_product(cost="9")

        lot = returns.create_credit_note_lot(uuid4(), product.id, "1", date(2024, 1, 15))

        assert D(lot.unit_cost) == D("9")

    def test_unknown_original_line_uses_product_cost(self, returns, make_product):
        product = make_product(cost="9")

        lot = returns.create_credit_note_lot(
            uuid4(), product.id, "1", date(2024, 1, 15), original_invoice_line_id=uuid4()
        )

        assert D(lot.unit_cost) == D("9")

    def test_original_unit_cogs_of_zero_quantity_line(self, returns, make_product, make_sale):
        product = make_product()
        sale = make_sale(product, "0", date(2024, 1, 10))

        assert returns.original_unit_cogs(sale.id) == Decimal("0")

    def test_delete_credit_note_lot(self, returns, lots, make_product):
        product = make_product()
        line_id = uuid4()
        returns.create_credit_note_lot(line_id, product.id, "1", date(2024, 1, 15), unit_cost="2")

        deletion = returns.delete_credit_note_lot(line_id)

        assert deletion is not None
        assert not deletion.needs_recalculation
        assert deletion.from_date == date(2024, 1, 15)
        assert lots.find_lot_for_source(LotSourceType.CREDIT_NOTE, line_id) is None

    def test_delete_absent_credit_note_lot(self, returns):
        assert returns.delete_credit_note_lot(uuid4()) is None

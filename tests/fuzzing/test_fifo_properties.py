"""
Property-based tests for the pure FIFO and replay engines.

Boundaries fuzzed here:
- Lot sets: 0-8 lots with integer quantities and costs, dates over a month
- Consumption: any positive quantity against any eligibility date
- Replay: any cutoff date over a random sale history

The replay property is the one recalculation relies on: rebuilding from any
cutoff reproduces exactly what a full rebuild in date order produces.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from costing_engines.fifo import LotSnapshot, plan_fifo_consumption, price_shortfall
from costing_engines.replay import (
    ConsumingKind,
    ConsumingLine,
    HistoricalConsumption,
    LotBaseline,
    replay_order,
    reset_remaining_quantities,
)
from costing_kernel.exceptions import InvalidQuantityError

BASE_DATE = date(2024, 1, 1)
BASE_TS = datetime(2024, 1, 1, tzinfo=timezone.utc)

day_offsets = st.integers(min_value=0, max_value=30)
quantities = st.integers(min_value=1, max_value=20).map(Decimal)
unit_costs = st.integers(min_value=0, max_value=50).map(Decimal)


@st.composite
def lot_sets(draw, max_lots=8):
    count = draw(st.integers(min_value=0, max_value=max_lots))
    lots = []
    for i in range(count):
        initial = draw(quantities)
        lots.append(
            LotSnapshot(
                lot_id=UUID(int=i + 1),
                lot_date=BASE_DATE + timedelta(days=draw(day_offsets)),
                created_at=BASE_TS + timedelta(seconds=i),
                unit_cost=draw(unit_costs),
                remaining_quantity=initial,
            )
        )
    return lots


@st.composite
def sale_lines(draw, max_lines=8):
    count = draw(st.integers(min_value=0, max_value=max_lines))
    return [
        (
            ConsumingLine(
                line_id=UUID(int=1000 + i),
                kind=ConsumingKind.SALE,
                transaction_date=BASE_DATE + timedelta(days=draw(day_offsets)),
                created_at=BASE_TS + timedelta(seconds=100 + i),
            ),
            draw(quantities),
        )
        for i in range(count)
    ]


def _run(lots, remaining, lines_with_qty, from_date):
    """Replay sale lines against remaining quantities; return state, history, costs."""
    remaining = dict(remaining)
    history = []
    costs = {}
    quantity_of = {line.line_id: qty for line, qty in lines_with_qty}
    ordered = replay_order([line for line, _ in lines_with_qty], from_date)
    for line in ordered:
        snapshots = [
            LotSnapshot(
                lot_id=lot.lot_id,
                lot_date=lot.lot_date,
                created_at=lot.created_at,
                unit_cost=lot.unit_cost,
                remaining_quantity=remaining[lot.lot_id],
            )
            for lot in lots
        ]
        plan = plan_fifo_consumption(snapshots, quantity_of[line.line_id], line.transaction_date)
        for d in plan.draws:
            remaining[d.lot_id] -= d.quantity
            history.append(
                HistoricalConsumption(
                    d.lot_id, line.line_id, line.kind, line.transaction_date, d.quantity
                )
            )
        costs[line.line_id] = plan.total_cost
    return remaining, history, costs


class TestPlanProperties:

    @given(lots=lot_sets(), quantity=quantities, as_of=day_offsets)
    @settings(max_examples=200, deadline=None)
    def test_conservation(self, lots, quantity, as_of):
        plan = plan_fifo_consumption(lots, quantity, BASE_DATE + timedelta(days=as_of))

        assert plan.quantity_drawn + plan.shortfall == quantity
        assert plan.insufficient_stock == (plan.shortfall > 0)
        assert plan.total_cost == sum((d.quantity * d.unit_cost for d in plan.draws), Decimal("0"))

    @given(lots=lot_sets(), quantity=quantities, as_of=day_offsets)
    @settings(max_examples=200, deadline=None)
    def test_draws_respect_eligibility_and_remaining(self, lots, quantity, as_of):
        as_of_date = BASE_DATE + timedelta(days=as_of)
        by_id = {lot.lot_id: lot for lot in lots}

        plan = plan_fifo_consumption(lots, quantity, as_of_date)

        for d in plan.draws:
            lot = by_id[d.lot_id]
            assert lot.lot_date <= as_of_date
            assert Decimal("0") < d.quantity <= lot.remaining_quantity

    @given(lots=lot_sets(), quantity=quantities, as_of=day_offsets)
    @settings(max_examples=200, deadline=None)
    def test_only_last_draw_is_partial(self, lots, quantity, as_of):
        as_of_date = BASE_DATE + timedelta(days=as_of)
        eligible = sorted(
            (lot for lot in lots if lot.lot_date <= as_of_date),
            key=lambda lot: lot.fifo_key,
        )

        plan = plan_fifo_consumption(lots, quantity, as_of_date)

        assert [d.lot_id for d in plan.draws] == [lot.lot_id for lot in eligible[: len(plan.draws)]]
        for d, lot in zip(plan.draws[:-1], eligible):
            assert d.quantity == lot.remaining_quantity

    @given(lots=lot_sets(), quantity=quantities)
    @settings(max_examples=100, deadline=None)
    def test_input_order_does_not_matter(self, lots, quantity):
        as_of_date = BASE_DATE + timedelta(days=30)

        forward = plan_fifo_consumption(lots, quantity, as_of_date)
        backward = plan_fifo_consumption(list(reversed(lots)), quantity, as_of_date)

        assert forward == backward

    @given(quantity=st.integers(max_value=0).map(Decimal))
    def test_non_positive_quantity_rejected(self, quantity):
        with pytest.raises(InvalidQuantityError):
            plan_fifo_consumption([], quantity, BASE_DATE)

    @given(lots=lot_sets(), quantity=quantities, fallback=st.none() | unit_costs)
    @settings(max_examples=100, deadline=None)
    def test_exactly_one_warning_per_shortfall(self, lots, quantity, fallback):
        plan = plan_fifo_consumption(lots, quantity, BASE_DATE + timedelta(days=30))

        pricing = price_shortfall(plan, "Widget", fallback)

        assert len(pricing.warnings) == (1 if plan.insufficient_stock else 0)
        expected_unit = fallback if fallback and fallback > 0 else Decimal("0")
        if plan.insufficient_stock:
            assert pricing.shortfall_cost == plan.shortfall * expected_unit


class TestReplayProperties:

    @given(lots=lot_sets(), lines=sale_lines(), cutoff=day_offsets)
    @settings(max_examples=200, deadline=None)
    def test_rebuild_from_any_cutoff_matches_full_rebuild(self, lots, lines, cutoff):
        initial = {lot.lot_id: lot.remaining_quantity for lot in lots}
        full_remaining, full_history, full_costs = _run(lots, initial, lines, date.min)

        from_date = BASE_DATE + timedelta(days=cutoff)
        reset = reset_remaining_quantities(
            [LotBaseline(lot.lot_id, lot.lot_date, lot.remaining_quantity) for lot in lots],
            full_history,
            from_date,
        )
        partial_remaining, _history, partial_costs = _run(lots, reset, lines, from_date)

        assert partial_remaining == full_remaining
        for line_id, cost in partial_costs.items():
            assert cost == full_costs[line_id]

    @given(lots=lot_sets(), lines=sale_lines(), cutoff=day_offsets)
    @settings(max_examples=200, deadline=None)
    def test_reset_stays_within_bounds(self, lots, lines, cutoff):
        initial = {lot.lot_id: lot.remaining_quantity for lot in lots}
        _remaining, history, _costs = _run(lots, initial, lines, date.min)

        reset = reset_remaining_quantities(
            [LotBaseline(lot.lot_id, lot.lot_date, lot.remaining_quantity) for lot in lots],
            history,
            BASE_DATE + timedelta(days=cutoff),
        )

        for lot in lots:
            assert Decimal("0") <= reset[lot.lot_id] <= lot.remaining_quantity

    @given(lines=sale_lines(), cutoff=day_offsets)
    def test_replay_order_is_chronological(self, lines, cutoff):
        from_date = BASE_DATE + timedelta(days=cutoff)

        ordered = replay_order([line for line, _ in lines], from_date)

        assert all(line.transaction_date >= from_date for line in ordered)
        keys = [line.replay_key for line in ordered]
        assert keys == sorted(keys)

"""
costing_engines.fifo -- Pure FIFO consumption planning and fallback pricing.

Responsibility:
    Given a product's lots as immutable snapshots, decide which lots a
    consuming transaction draws from, how much from each, and at what cost.
    Price any shortfall at the product's fallback cost and word the warning
    the user sees.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import costing_kernel/db/types and costing_kernel/logging_config.
    The stateful FifoCostingService lives in costing_services/.

Invariants enforced:
    - FIFO order: lots are drawn in (lot_date, created_at, lot_id) order.
    - Date eligibility: a lot dated after as_of_date is never drawn.
    - Conservation: sum(draw.quantity) + shortfall == quantity_needed.
    - A draw never exceeds the lot's remaining quantity.

Failure modes:
    - InvalidQuantityError if quantity_needed <= 0.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID

from costing_kernel.db.types import MONEY_DECIMAL_PLACES, ZERO, round_money
from costing_kernel.exceptions import InvalidQuantityError
from costing_kernel.logging_config import get_logger

logger = get_logger("engines.fifo")


def naive_utc(value: datetime) -> datetime:
    """
    Normalize a timestamp for ordering.

    Rows read back from SQLite carry naive UTC timestamps while rows created in
    the current session carry aware ones; both compare after normalizing.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True, slots=True)
class LotSnapshot:
    """Point-in-time view of a stock lot, as the planner sees it."""

    lot_id: UUID
    lot_date: date
    created_at: datetime
    unit_cost: Decimal
    remaining_quantity: Decimal
    warehouse_id: str | None = None

    @property
    def fifo_key(self) -> tuple[date, datetime, str]:
        return (self.lot_date, naive_utc(self.created_at), str(self.lot_id))


@dataclass(frozen=True, slots=True)
class LotDraw:
    """Quantity taken from one lot."""

    lot_id: UUID
    quantity: Decimal
    unit_cost: Decimal

    @property
    def cost(self) -> Decimal:
        return self.quantity * self.unit_cost


@dataclass(frozen=True, slots=True)
class ConsumptionPlan:
    """
    Result of planning a FIFO draw.

    available_quantity sums every eligible lot, not only the lots drawn.
    """

    quantity_needed: Decimal
    draws: tuple[LotDraw, ...]
    total_cost: Decimal
    available_quantity: Decimal
    shortfall: Decimal
    insufficient_stock: bool

    @property
    def quantity_drawn(self) -> Decimal:
        return sum((d.quantity for d in self.draws), ZERO)

    @classmethod
    def empty(cls, quantity_needed: Decimal = ZERO) -> ConsumptionPlan:
        """Plan for a line that consumes nothing (zero or negative quantity)."""
        return cls(
            quantity_needed=quantity_needed,
            draws=(),
            total_cost=ZERO,
            available_quantity=ZERO,
            shortfall=ZERO,
            insufficient_stock=False,
        )


@dataclass(frozen=True, slots=True)
class FallbackPricing:
    """How the shortfall of a plan was priced."""

    shortfall_cost: Decimal
    used_fallback_cost: bool
    fallback_unit_cost: Decimal | None
    warnings: tuple[str, ...]


def eligible_lots(
    lots: Iterable[LotSnapshot],
    as_of_date: date,
    warehouse_id: str | None = None,
) -> list[LotSnapshot]:
    """Lots with stock, dated on or before as_of_date, in FIFO order."""
    selected = [
        lot
        for lot in lots
        if lot.remaining_quantity > 0
        and lot.lot_date <= as_of_date
        and (warehouse_id is None or lot.warehouse_id == warehouse_id)
    ]
    selected.sort(key=lambda lot: lot.fifo_key)
    return selected


def plan_fifo_consumption(
    lots: Iterable[LotSnapshot],
    quantity_needed: Decimal,
    as_of_date: date,
    warehouse_id: str | None = None,
) -> ConsumptionPlan:
    """
    Walk eligible lots oldest first, taking min(remaining, still needed).

    Preconditions:
        quantity_needed > 0.

    Postconditions:
        sum(draw.quantity) + shortfall == quantity_needed.

    Raises:
        InvalidQuantityError: If quantity_needed <= 0.
    """
    if quantity_needed <= 0:
        raise InvalidQuantityError(quantity_needed)

    candidates = eligible_lots(lots, as_of_date, warehouse_id)
    available = sum((lot.remaining_quantity for lot in candidates), ZERO)

    draws: list[LotDraw] = []
    still_needed = quantity_needed
    total_cost = ZERO
    for lot in candidates:
        if still_needed <= 0:
            break
        take = min(lot.remaining_quantity, still_needed)
        draw = LotDraw(lot_id=lot.lot_id, quantity=take, unit_cost=lot.unit_cost)
        draws.append(draw)
        total_cost += draw.cost
        still_needed -= take

    shortfall = still_needed if still_needed > 0 else ZERO

    logger.debug(
        "fifo_plan_computed",
        extra={
            "quantity_needed": str(quantity_needed),
            "eligible_lots": len(candidates),
            "draws": len(draws),
            "available_quantity": str(available),
            "shortfall": str(shortfall),
        },
    )

    return ConsumptionPlan(
        quantity_needed=quantity_needed,
        draws=tuple(draws),
        total_cost=total_cost,
        available_quantity=available,
        shortfall=shortfall,
        insufficient_stock=shortfall > 0,
    )


def _fmt(value: Decimal, decimal_places: int) -> str:
    return str(round_money(value, decimal_places))


def price_shortfall(
    plan: ConsumptionPlan,
    product_label: str,
    fallback_unit_cost: Decimal | None,
    decimal_places: int = MONEY_DECIMAL_PLACES,
) -> FallbackPricing:
    """
    Price a plan's shortfall at the product's fallback cost.

    Exactly one warning is produced when there is a shortfall; none when the
    plan is fully covered by lots.  A missing or non-positive fallback cost
    prices the shortfall at zero and the warning says so.
    """
    if not plan.insufficient_stock:
        return FallbackPricing(
            shortfall_cost=ZERO,
            used_fallback_cost=False,
            fallback_unit_cost=None,
            warnings=(),
        )

    unit_cost = fallback_unit_cost if fallback_unit_cost and fallback_unit_cost > 0 else ZERO
    has_cost = unit_cost > 0

    if plan.available_quantity <= 0:
        if has_cost:
            warning = (
                f'Product "{product_label}" has no stock. '
                f"Using fallback cost of {_fmt(unit_cost, decimal_places)}/unit."
            )
        else:
            warning = (
                f'Product "{product_label}" has no stock and no fallback cost set. '
                f"COGS will be 0."
            )
    else:
        head = (
            f'Product "{product_label}" only has '
            f"{_fmt(plan.available_quantity, decimal_places)} units in stock, "
            f"but {_fmt(plan.quantity_needed, decimal_places)} were sold. "
            f"Shortfall of {_fmt(plan.shortfall, decimal_places)} units costed at "
        )
        if has_cost:
            warning = head + f"fallback price of {_fmt(unit_cost, decimal_places)}/unit."
        else:
            warning = head + "0 (no fallback cost set)."

    return FallbackPricing(
        shortfall_cost=plan.shortfall * unit_cost,
        used_fallback_cost=True,
        fallback_unit_cost=unit_cost,
        warnings=(warning,),
    )

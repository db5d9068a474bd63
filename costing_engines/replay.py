"""
costing_engines.replay -- Pure cutoff classification and replay ordering.

Responsibility:
    Everything a retroactive recalculation decides before it touches the
    database: which side of the cutoff a transaction or lot falls on, what
    each lot's remaining quantity is reset to, and the strict order in which
    consuming lines are replayed.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    The stateful RecalculationService lives in costing_services/.

Invariants enforced:
    - Cutoff: from_date is inclusive on the ON_OR_AFTER side and exclusive on
      the BEFORE side.
    - Reset: a BEFORE lot keeps exactly the consumption of BEFORE
      transactions; an ON_OR_AFTER lot goes back to its initial quantity.
    - Replay order is total: (transaction_date, created_at, line_id).
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from costing_engines.fifo import naive_utc
from costing_kernel.db.types import ZERO


class CutoffSide(str, Enum):
    """Which side of a recalculation cutoff a date falls on."""

    BEFORE = "before"
    ON_OR_AFTER = "on_or_after"


class ConsumingKind(str, Enum):
    """Kind of line that draws stock from lots."""

    SALE = "sale"
    DEBIT_NOTE = "debit_note"


def classify(value: date, from_date: date) -> CutoffSide:
    """BEFORE iff value < from_date."""
    return CutoffSide.BEFORE if value < from_date else CutoffSide.ON_OR_AFTER


@dataclass(frozen=True, slots=True)
class ConsumingLine:
    """A sale or debit-note line as the replay sees it."""

    line_id: UUID
    kind: ConsumingKind
    transaction_date: date
    created_at: datetime

    @property
    def replay_key(self) -> tuple[date, datetime, str]:
        return (self.transaction_date, naive_utc(self.created_at), str(self.line_id))


@dataclass(frozen=True, slots=True)
class LotBaseline:
    """A lot's identity, date, and initial quantity."""

    lot_id: UUID
    lot_date: date
    initial_quantity: Decimal


@dataclass(frozen=True, slots=True)
class HistoricalConsumption:
    """One existing consumption edge joined to its transaction's date."""

    lot_id: UUID
    line_id: UUID
    kind: ConsumingKind
    transaction_date: date
    quantity: Decimal


def reset_remaining_quantities(
    lots: Iterable[LotBaseline],
    history: Iterable[HistoricalConsumption],
    from_date: date,
    pinned_kinds: frozenset[ConsumingKind] = frozenset(),
) -> dict[UUID, Decimal]:
    """
    Remaining quantity for every lot as of just before from_date.

    BEFORE lots: initial - sum(consumption by BEFORE transactions).
    ON_OR_AFTER lots: initial.

    Consumption by a pinned kind is left in place whatever its date, so it is
    subtracted from every lot it touched.
    """
    kept: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
    pinned: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
    for edge in history:
        if edge.kind in pinned_kinds:
            pinned[edge.lot_id] += edge.quantity
        elif classify(edge.transaction_date, from_date) is CutoffSide.BEFORE:
            kept[edge.lot_id] += edge.quantity

    reset: dict[UUID, Decimal] = {}
    for lot in lots:
        base = lot.initial_quantity - pinned[lot.lot_id]
        if classify(lot.lot_date, from_date) is CutoffSide.BEFORE:
            reset[lot.lot_id] = base - kept[lot.lot_id]
        else:
            reset[lot.lot_id] = base
    return reset


def replay_order(lines: Iterable[ConsumingLine], from_date: date) -> list[ConsumingLine]:
    """ON_OR_AFTER lines in strict chronological replay order."""
    forward = [
        line
        for line in lines
        if classify(line.transaction_date, from_date) is CutoffSide.ON_OR_AFTER
    ]
    forward.sort(key=lambda line: line.replay_key)
    return forward


def recalculation_start_date(old_date: date | None, new_date: date) -> date:
    """
    Date a recalculation must start from after a transaction moves.

    The earlier of the old and new dates; the new date when there was none.
    """
    if old_date is None:
        return new_date
    return min(old_date, new_date)

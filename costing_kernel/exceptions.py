"""
Typed Exception Hierarchy for the Costing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the costing core (request handlers, batch jobs, the CLI) must be
able to tell a purchase return that cannot be honoured apart from a missing
product or a corrupted lot without parsing message text.  Every error here:
  1. Has its own class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries structured DATA as attributes (not just a message string)

Example:
    try:
        returns.consume_for_debit_note(product_id, qty, line_id, issue_date)
    except InsufficientStockError as e:
        api_response(code=e.code, available=e.available, shortfall=e.shortfall)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CostingKernelError (base)
    |
    +-- StockError
    |   +-- InsufficientStockError
    |   +-- InvalidQuantityError
    |   +-- InvalidCostError
    |
    +-- NotFoundError
    |   +-- ProductNotFoundError
    |   +-- StockLotNotFoundError
    |   +-- ConsumingLineNotFoundError
    |
    +-- InvariantViolationError
    |   +-- LotOverdrawnError
    |   +-- LotOverRestoredError
    |
    +-- RecalculationError
    |   +-- RecalculationTimeoutError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Stock           | INSUFFICIENT_STOCK          | Purchase return exceeds stock on hand
                | INVALID_QUANTITY            | Quantity is zero, negative, or not numeric
                | INVALID_COST                | Unit cost is negative or not numeric
----------------|-----------------------------|-----------------------------------------
Not found       | PRODUCT_NOT_FOUND           | Product ID doesn't exist
                | STOCK_LOT_NOT_FOUND         | Stock lot ID doesn't exist
                | CONSUMING_LINE_NOT_FOUND    | Sale / debit-note line doesn't exist
----------------|-----------------------------|-----------------------------------------
Invariant       | LOT_OVERDRAWN               | Remaining quantity would go below zero
                | LOT_OVER_RESTORED           | Remaining would exceed initial quantity
----------------|-----------------------------|-----------------------------------------
Recalculation   | RECALCULATION_TIMEOUT       | Replay exceeded configured time budget
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Update/delete of a cost audit record
----------------|-----------------------------|-----------------------------------------
Configuration   | CONFIGURATION_ERROR         | Invalid costing configuration value

Insufficient stock for a SALE is not an error: it is reported as a warning on
the ConsumptionResult and costed at the product's fallback cost.

===============================================================================
"""

from decimal import Decimal


class CostingKernelError(Exception):
    """
    Base exception for all costing kernel errors.

    All subclasses must have a `code` class attribute
    for machine-readable error identification.
    """

    code: str = "COSTING_KERNEL_ERROR"


# Stock-related exceptions


class StockError(CostingKernelError):
    """Base exception for stock availability and input errors."""

    code: str = "STOCK_ERROR"


class InsufficientStockError(StockError):
    """
    Requested quantity exceeds the stock available to a purchase return.

    Raised before any lot is touched, so the caller's transaction has
    nothing to undo from the costing core.
    """

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        product_id: str,
        requested: Decimal,
        available: Decimal,
        shortfall: Decimal,
    ):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.shortfall = shortfall
        super().__init__(
            f"Insufficient stock to process debit note for product {product_id}. "
            f"Requested: {_plain(requested)}, Available: {_plain(available)}, "
            f"Shortfall: {_plain(shortfall)}"
        )


class InvalidQuantityError(StockError):
    """Quantity is not a positive decimal."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, quantity: object, reason: str = "must be positive"):
        self.quantity = str(quantity)
        self.reason = reason
        super().__init__(f"Invalid quantity {quantity}: {reason}")


class InvalidCostError(StockError):
    """Unit cost is negative or not a decimal."""

    code: str = "INVALID_COST"

    def __init__(self, unit_cost: object, reason: str = "cannot be negative"):
        self.unit_cost = str(unit_cost)
        self.reason = reason
        super().__init__(f"Invalid unit cost {unit_cost}: {reason}")


# Not-found exceptions


class NotFoundError(CostingKernelError):
    """Base exception for references to rows that do not exist."""

    code: str = "NOT_FOUND"


class ProductNotFoundError(NotFoundError):
    """Product with given ID was not found."""

    code: str = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class StockLotNotFoundError(NotFoundError):
    """Stock lot with given ID was not found."""

    code: str = "STOCK_LOT_NOT_FOUND"

    def __init__(self, lot_id: str):
        self.lot_id = lot_id
        super().__init__(f"Stock lot not found: {lot_id}")


class ConsumingLineNotFoundError(NotFoundError):
    """Sale or debit-note line with given ID was not found."""

    code: str = "CONSUMING_LINE_NOT_FOUND"

    def __init__(self, line_id: str, line_kind: str):
        self.line_id = line_id
        self.line_kind = line_kind
        super().__init__(f"{line_kind} line not found: {line_id}")


# Invariant violations: a logic error in the calling sequence


class InvariantViolationError(CostingKernelError):
    """Base exception for lot quantity invariant violations."""

    code: str = "INVARIANT_VIOLATION"


class LotOverdrawnError(InvariantViolationError):
    """Decrement would take a lot's remaining quantity below zero."""

    code: str = "LOT_OVERDRAWN"

    def __init__(self, lot_id: str, remaining: Decimal, requested: Decimal):
        self.lot_id = lot_id
        self.remaining = remaining
        self.requested = requested
        super().__init__(
            f"Stock lot {lot_id} has {_plain(remaining)} remaining, "
            f"cannot consume {_plain(requested)}"
        )


class LotOverRestoredError(InvariantViolationError):
    """Restore would take a lot's remaining quantity above its initial quantity."""

    code: str = "LOT_OVER_RESTORED"

    def __init__(
        self,
        lot_id: str,
        remaining: Decimal,
        restoring: Decimal,
        initial: Decimal,
    ):
        self.lot_id = lot_id
        self.remaining = remaining
        self.restoring = restoring
        self.initial = initial
        super().__init__(
            f"Stock lot {lot_id}: restoring {_plain(restoring)} onto "
            f"{_plain(remaining)} remaining exceeds initial quantity {_plain(initial)}"
        )


# Recalculation


class RecalculationError(CostingKernelError):
    """Base exception for recalculation failures."""

    code: str = "RECALCULATION_ERROR"


class RecalculationTimeoutError(RecalculationError):
    """Recalculation exceeded its configured time budget."""

    code: str = "RECALCULATION_TIMEOUT"

    def __init__(self, product_id: str, elapsed_seconds: float, limit_seconds: float):
        self.product_id = product_id
        self.elapsed_seconds = elapsed_seconds
        self.limit_seconds = limit_seconds
        super().__init__(
            f"Recalculation for product {product_id} exceeded "
            f"{limit_seconds}s (elapsed {elapsed_seconds:.2f}s)"
        )


# Immutability


class ImmutabilityError(CostingKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Cost audit log rows are append-only.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Configuration


class ConfigurationError(CostingKernelError):
    """Costing configuration value is invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid costing configuration '{field}': {reason}")


def _plain(value: Decimal) -> str:
    """Fixed-point rendering without exponent or trailing zeros."""
    if not isinstance(value, Decimal):
        return str(value)
    normalized = value.normalize()
    if normalized == 0:
        return "0"
    return format(normalized, "f")

"""
Module: costing_kernel.db.types
Responsibility: Annotated column types and the decimal helpers every costing
    module uses for quantities and money.
Architecture position: Kernel > DB.  May be imported by models/, services/,
    selectors/, and engines.  MUST NOT import from any of those layers.

Invariants enforced:
    CRITICAL: No floats anywhere in the costing kernel.  Quantities and costs
    are Decimal; ints and strings are coerced through str() so a float never
    silently loses precision on the way in.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Annotated

from sqlalchemy import Numeric, String

# Quantity and money share the same storage precision
STORAGE_PRECISION = 38

Quantity = Annotated[Decimal, Numeric(STORAGE_PRECISION, 9)]
Money = Annotated[Decimal, Numeric(STORAGE_PRECISION, 9)]

ShortCode = Annotated[str, String(50)]

MONEY_DECIMAL_PLACES = 2
STORAGE_DECIMAL_PLACES = 9
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")


def to_decimal(value: Decimal | int | str) -> Decimal:
    """
    Coerce a caller-supplied number to Decimal.

    Raises:
        TypeError: If value is a float (precision would already be lost).
        ValueError: If value is not numeric.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError("float quantities are not accepted; pass Decimal or str")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a decimal value: {value!r}") from exc


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """Round a monetary value for display."""
    quantize_str = "0." + "0" * decimal_places if decimal_places > 0 else "0"
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def normalize_stored(value: Decimal) -> Decimal:
    """
    Quantize to storage precision so values compare equal across round-trips.

    Runs with the column's 38 significant digits; the default 28-digit context
    cannot quantize values of 1e19 and above to 9 places.
    """
    with localcontext() as ctx:
        ctx.prec = STORAGE_PRECISION
        return value.quantize(Decimal(1).scaleb(-STORAGE_DECIMAL_PLACES), rounding=DEFAULT_ROUNDING)

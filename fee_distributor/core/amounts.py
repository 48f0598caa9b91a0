"""Amount Arithmetic — the one decimal type and the one rounding rule.

Invariants:
    - Every amount is a Decimal; floats are rejected at the boundary
    - Rounding rule: floor (ROUND_DOWN) to the smallest transferable unit,
      10**-decimals. Used by aggregation (payable amount) and by transfer
      construction (base units), so both sides always agree
    - Nothing here ever rounds up — the distributor never pays more than owed

Design Decisions:
    - Local decimal context with 50 digits: sums of NUMERIC(38, 18) quantities
      times a fee rate stay exact before the single floor
"""

from decimal import Decimal, ROUND_DOWN, localcontext

_PRECISION = 50


def as_decimal(value: Decimal | int | str) -> Decimal:
    """Coerce DB/config values to Decimal. Floats are a programming error."""
    if isinstance(value, float):
        raise TypeError("float amounts are not allowed; use Decimal or str")
    return value if isinstance(value, Decimal) else Decimal(value)


def unit(decimals: int) -> Decimal:
    """Smallest transferable unit, e.g. 1E-9 for 9 decimals."""
    return Decimal(1).scaleb(-decimals)


def floor_to_unit(amount: Decimal, decimals: int) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return amount.quantize(unit(decimals), rounding=ROUND_DOWN)


def apply_fee_rate(quantity: Decimal, fee_rate: Decimal) -> Decimal:
    """Exact product; flooring happens once, later."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return quantity * fee_rate


def exact_sum(values) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        total = Decimal("0")
        for v in values:
            total += as_decimal(v)
        return total


def to_base_units(amount: Decimal, decimals: int, adjustment: Decimal) -> int:
    """Transfer size in integer base units: floor(amount * 10**decimals * adjustment)."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        scaled = amount.scaleb(decimals) * adjustment
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def format_amount(amount: Decimal) -> str:
    """Plain (non-scientific) string for logs and string-backed columns."""
    return format(amount.normalize(), "f") if amount else "0"

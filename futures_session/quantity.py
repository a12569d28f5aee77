"""
Futures Session - Quantity Resolver.

============================================================
PURPOSE
============================================================
Turn a notional amount into an exchange-compliant quantity
string, and round prices to the symbol's tick size.

RULES:
- Quantities are floored to the step, never rounded up
- A result below the minimum quantity is rejected
- All arithmetic is Decimal; floats never enter

============================================================
"""

from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union

from .errors import InvalidOrderInput, OrderTooSmall
from .types import SymbolRule


Number = Union[Decimal, str, int]


# ============================================================
# HELPERS
# ============================================================

def to_decimal(value: Number, name: str = "value") -> Decimal:
    """Convert to Decimal, rejecting floats and unparsable input."""
    if isinstance(value, float):
        raise InvalidOrderInput(f"{name} must be Decimal, str or int, not float: {value!r}")
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise InvalidOrderInput(f"{name} is not a number: {value!r}") from e
    if not result.is_finite():
        raise InvalidOrderInput(f"{name} is not finite: {value!r}")
    return result


def step_precision(step: Decimal) -> int:
    """
    Fractional digits in a step size after stripping trailing zeros.

    "0.00100000" -> 3, "0.10" -> 1, "1.0" -> 0, "10" -> 0.
    """
    exponent = step.normalize().as_tuple().exponent
    return max(0, -int(exponent))


def floor_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Largest multiple of `step` not greater than `value`."""
    if step <= 0:
        return value
    return (value / step).to_integral_value(rounding=ROUND_DOWN) * step


def format_decimal(value: Decimal, precision: int) -> str:
    """Format with exactly `precision` fractional digits, no exponent."""
    quantum = Decimal(1).scaleb(-precision)
    return format(value.quantize(quantum, rounding=ROUND_DOWN), "f")


# ============================================================
# RESOLVERS
# ============================================================

def resolve_quantity(notional: Number, reference_price: Number, rules: SymbolRule) -> str:
    """
    Size an order from a notional amount.

    Args:
        notional: Order size in quote currency
        reference_price: Price used to convert notional to quantity
        rules: Symbol trading constraints

    Returns:
        Quantity string with exactly `rules.quantity_precision` digits

    Raises:
        InvalidOrderInput: notional or price is not positive
        OrderTooSmall: floored quantity is zero or below the minimum
    """
    notional_d = to_decimal(notional, "notional")
    price_d = to_decimal(reference_price, "reference_price")
    if notional_d <= 0:
        raise InvalidOrderInput(f"notional must be positive, got {notional_d}")
    if price_d <= 0:
        raise InvalidOrderInput(f"reference_price must be positive, got {price_d}")

    raw = notional_d / price_d
    floored = floor_to_step(raw, rules.quantity_step)

    if floored <= 0 or floored < rules.min_quantity:
        raise OrderTooSmall(
            computed=floored,
            minimum=rules.min_quantity,
            symbol=rules.symbol,
        )

    return format_decimal(floored, rules.quantity_precision)


def resolve_price(price: Number, rules: SymbolRule) -> str:
    """
    Round a price down to the tick size.

    A symbol whose tick has no fractional digits still gets one
    fractional digit ("60000.0").
    """
    price_d = to_decimal(price, "price")
    if price_d <= 0:
        raise InvalidOrderInput(f"price must be positive, got {price_d}")

    floored = floor_to_step(price_d, rules.price_step)
    return format_decimal(floored, rules.price_precision or 1)

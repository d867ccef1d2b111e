"""
Decimal arithmetic helpers.

Every price, quantity, percentage and money value in the bot is a Decimal
computed under a fixed context: 20 significant digits, truncating toward
zero. Floats only appear at the broker boundary, where ``to_decimal`` and
``to_float`` are the two audited conversion points.
"""

import decimal
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Optional

PRECISION = 20

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")

_MISSING = object()


def install_context() -> decimal.Context:
    """Install the trading decimal context for this thread and new threads."""
    decimal.DefaultContext.prec = PRECISION
    decimal.DefaultContext.rounding = ROUND_DOWN
    ctx = decimal.getcontext()
    ctx.prec = PRECISION
    ctx.rounding = ROUND_DOWN
    return ctx


install_context()


def to_decimal(value: Any, default: Any = _MISSING) -> Decimal:
    """
    Convert a broker/config value to Decimal.

    Floats go through ``str()`` so 0.1 becomes Decimal("0.1") rather than
    its binary expansion.

    Raises:
        ValueError: value is None or unparseable and no default was given
    """
    if isinstance(value, Decimal):
        return +value
    if value is None or isinstance(value, bool):
        if default is not _MISSING:
            return default
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    try:
        if isinstance(value, float):
            return +Decimal(str(value))
        return +Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        if default is not _MISSING:
            return default
        raise ValueError(f"Cannot convert {value!r} to Decimal") from exc


def to_optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return to_decimal(value, default=None)


def to_float(value: Decimal) -> float:
    """Decimal -> float. Only for values handed to the exchange client."""
    return float(value)


def safe_divide(numerator: Decimal, denominator: Decimal, default: Decimal = ZERO) -> Decimal:
    if denominator == 0:
        return default
    return numerator / denominator


def percent_change(start: Decimal, end: Decimal) -> Decimal:
    """(end - start) / start * 100, or 0 when start is zero."""
    if start == 0:
        return ZERO
    return (end - start) / start * HUNDRED


def quantize_display(value: Optional[Decimal], places: int = 2) -> str:
    """Render a Decimal for log/notification text."""
    if value is None:
        return "n/a"
    exp = Decimal(1).scaleb(-places)
    return str(value.quantize(exp, rounding=ROUND_DOWN))

"""
Strategy actions.

One tick produces exactly one action. Each variant carries only what its
executor needs; ``GridStrategy.execute`` matches on the concrete type.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from core.models import IndicatorSnapshot


@dataclass(frozen=True)
class Wait:
    reason: str


@dataclass(frozen=True)
class OpenCycle:
    amount: Decimal
    total_balance: Decimal
    grid_percent: Decimal
    price: Decimal
    indicators: Optional[IndicatorSnapshot] = None


@dataclass(frozen=True)
class DcaBuy:
    cycle_id: int
    amount: Decimal
    buy_number: int
    price: Decimal


@dataclass(frozen=True)
class PartialSell:
    cycle_id: int
    quantity: Decimal
    sell_percent: Decimal
    price: Decimal


@dataclass(frozen=True)
class ActivateTrailing:
    cycle_id: int
    price: Decimal


@dataclass(frozen=True)
class TrailingSell:
    cycle_id: int
    quantity: Decimal
    price: Decimal
    stop_price: Decimal


@dataclass(frozen=True)
class FullClose:
    cycle_id: int
    quantity: Decimal
    reason: str


Action = Union[Wait, OpenCycle, DcaBuy, PartialSell, ActivateTrailing, TrailingSell, FullClose]


def action_name(action: Action) -> str:
    """Stable label for logs and metrics (e.g. 'PARTIAL_SELL')."""
    names = {
        Wait: "WAIT",
        OpenCycle: "OPEN_CYCLE",
        DcaBuy: "DCA_BUY",
        PartialSell: "PARTIAL_SELL",
        ActivateTrailing: "ACTIVATE_TRAILING",
        TrailingSell: "TRAILING_SELL",
        FullClose: "FULL_CLOSE",
    }
    try:
        return names[type(action)]
    except KeyError:
        raise TypeError(f"Unknown action type: {type(action).__name__}") from None

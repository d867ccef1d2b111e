"""
gridtrader Core: Capital Manager

Sizes buys from total account value and vets a prospective buy against the
cycle exposure cap, the exchange minimum and the free quote balance.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from core.numeric import to_decimal

logger = logging.getLogger(__name__)


@dataclass
class BuyCheck:
    """Outcome of a buy vetting. A rejection is a decision, not an error."""
    can_buy: bool
    reason: Optional[str] = None
    amount: Optional[Decimal] = None


class CapitalManager:
    """
    Args:
        broker: exposes get_balance, get_min_order_size, get_total_balance_in_usdt
        policy: policy.yaml dict (reads ``capital``)
        quote_currency: currency orders are sized in
    """

    def __init__(self, broker, policy: Dict, quote_currency: str = "USDT"):
        self.broker = broker
        self.quote_currency = quote_currency
        capital_cfg = policy.get("capital", {}) or {}
        self.entry_percent = to_decimal(capital_cfg.get("entry_percent", "0.10"))
        self.max_exposure_percent = to_decimal(capital_cfg.get("max_exposure", "0.30"))
        self.min_order_value = to_decimal(capital_cfg.get("min_order_value", "10"))

        logger.info(
            f"Initialized CapitalManager (entry={self.entry_percent}, "
            f"max_exposure={self.max_exposure_percent}, quote={self.quote_currency})"
        )

    def calculate_entry_size(self, total_balance: Decimal) -> Decimal:
        return total_balance * self.entry_percent

    def calculate_max_exposure(self, total_balance: Decimal) -> Decimal:
        return total_balance * self.max_exposure_percent

    def get_available_balance(self) -> Decimal:
        balance = self.broker.get_balance(self.quote_currency)
        logger.debug(f"Available {self.quote_currency} balance: {balance}")
        return balance

    def get_total_balance(self, symbols: List[str]) -> Decimal:
        """Account value in quote currency: free quote plus held base assets."""
        return self.broker.get_total_balance_in_usdt(symbols)

    def can_execute_buy(
        self,
        total_balance: Decimal,
        current_cycle_invested: Decimal,
        symbol: str,
    ) -> BuyCheck:
        """
        Vet a buy of one entry size.

        Order of checks: exposure cap, exchange minimum, free balance. The
        first failure returns its reason.
        """
        entry_size = self.calculate_entry_size(total_balance)
        max_exposure = self.calculate_max_exposure(total_balance)
        projected = current_cycle_invested + entry_size

        if projected > max_exposure:
            reason = (
                f"Exposure limit: {self.format_currency(projected)} would exceed "
                f"max {self.format_currency(max_exposure)}"
            )
            logger.warning(f"{symbol}: {reason}")
            return BuyCheck(can_buy=False, reason=reason)

        min_order = self.broker.get_min_order_size(symbol)
        if entry_size < min_order:
            reason = (
                f"Entry size {self.format_currency(entry_size)} below minimum order "
                f"{self.format_currency(min_order)}"
            )
            logger.warning(f"{symbol}: {reason}")
            return BuyCheck(can_buy=False, reason=reason)

        available = self.get_available_balance()
        if available < entry_size:
            reason = (
                f"Insufficient balance: need {self.format_currency(entry_size)}, "
                f"have {self.format_currency(available)}"
            )
            logger.warning(f"{symbol}: {reason}")
            return BuyCheck(can_buy=False, reason=reason)

        return BuyCheck(can_buy=True, amount=entry_size)

    def format_currency(self, value: Decimal) -> str:
        return f"{to_decimal(value):.2f} {self.quote_currency}"

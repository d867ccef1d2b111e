"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class OrderExecutionError(RuntimeError):
    """A market order was rejected or its outcome is unknown. Never retried."""

    def __init__(self, symbol: str, side: str, original: Optional[Exception] = None):
        super().__init__(f"{side} order failed for {symbol}: {original}")
        self.symbol = symbol
        self.side = side
        self.original = original


class LedgerError(RuntimeError):
    """A ledger unit of work failed and was rolled back."""


class IndicatorSourceError(RuntimeError):
    """The indicator provider returned an error or unusable payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

"""
Pytest configuration and fixtures for gridtrader tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import copy
from decimal import Decimal

import pytest

from core.capital import CapitalManager
from core.indicators import IndicatorService
from core.position_manager import PositionManager
from core.risk import RiskManager
from infra.rate_limiter import SlidingWindowRateLimiter
from infra.state_store import LedgerStore
from tests.helpers import DEFAULT_POLICY, FakeBroker, FakeIndicatorSource, oversold_values


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def policy():
    return copy.deepcopy(DEFAULT_POLICY)


@pytest.fixture
def ledger():
    store = LedgerStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def broker():
    return FakeBroker(prices={"BTC/USDT": Decimal("100")}, quote_balance=Decimal("1000"))


@pytest.fixture
def indicator_source():
    return FakeIndicatorSource(oversold_values())


@pytest.fixture
def indicators(indicator_source, policy):
    limiter = SlidingWindowRateLimiter(max_requests=100, window_seconds=1, sleep=lambda _s: None)
    return IndicatorService(indicator_source, policy, rate_limiter=limiter, cache_ttl_seconds=60)


@pytest.fixture
def positions(ledger, policy):
    return PositionManager(ledger, policy)


@pytest.fixture
def capital(broker, policy):
    return CapitalManager(broker, policy, quote_currency="USDT")


@pytest.fixture
def risk(ledger, broker, policy):
    return RiskManager(ledger, broker, policy)

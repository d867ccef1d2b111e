"""Test helpers for gridtrader test suite"""

from tests.helpers.config_files import BASE_APP, DEFAULT_POLICY, write_config_dir
from tests.helpers.fakes import (
    FakeBroker,
    FakeIndicatorSource,
    make_fill,
    oversold_values,
)

__all__ = [
    "BASE_APP",
    "DEFAULT_POLICY",
    "FakeBroker",
    "FakeIndicatorSource",
    "make_fill",
    "oversold_values",
    "write_config_dir",
]

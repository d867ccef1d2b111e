"""Tests for the Decimal helpers used at every money/price boundary."""
import decimal
from decimal import Decimal

import pytest

from core.numeric import (
    PRECISION,
    ZERO,
    percent_change,
    quantize_display,
    safe_divide,
    to_decimal,
    to_optional_decimal,
)


def test_context_truncates_toward_zero():
    ctx = decimal.getcontext()
    assert ctx.prec == PRECISION
    assert ctx.rounding == decimal.ROUND_DOWN


def test_float_goes_through_str():
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal("97.5") == Decimal("97.5")
    assert to_decimal(3) == Decimal("3")


def test_to_decimal_rejects_garbage_without_default():
    with pytest.raises(ValueError):
        to_decimal("not a number")
    with pytest.raises(ValueError):
        to_decimal(None)


def test_to_decimal_default_and_optional():
    assert to_decimal(None, default=ZERO) == ZERO
    assert to_decimal("x", default=None) is None
    assert to_optional_decimal(None) is None
    assert to_optional_decimal("1.5") == Decimal("1.5")


def test_bool_is_not_a_number():
    with pytest.raises(ValueError):
        to_decimal(True)


def test_safe_divide_and_percent_change():
    assert safe_divide(Decimal("1"), ZERO) == ZERO
    assert safe_divide(Decimal("1"), ZERO, default=Decimal("-1")) == Decimal("-1")
    assert percent_change(Decimal("100"), Decimal("103")) == Decimal("3")
    assert percent_change(ZERO, Decimal("5")) == ZERO


def test_quantize_display_truncates():
    assert quantize_display(Decimal("97.499")) == "97.49"
    assert quantize_display(None) == "n/a"

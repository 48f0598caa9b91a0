"""Tests for amount arithmetic — one decimal type, one floor rule, no IO."""

from decimal import Decimal

import pytest

from fee_distributor.core.amounts import (
    apply_fee_rate,
    as_decimal,
    exact_sum,
    floor_to_unit,
    format_amount,
    to_base_units,
    unit,
)


def test_unit_is_smallest_transferable_amount():
    assert unit(9) == Decimal("0.000000001")
    assert unit(0) == Decimal("1")


def test_floor_never_rounds_up():
    assert floor_to_unit(Decimal("0.0000000019"), 9) == Decimal("0.000000001")
    assert floor_to_unit(Decimal("1.9999999999"), 9) == Decimal("1.999999999")


def test_floor_truncates_towards_zero_for_negative_values():
    assert floor_to_unit(Decimal("-0.0000000005"), 9) == 0


def test_fee_rate_product_is_exact():
    assert apply_fee_rate(Decimal("10"), Decimal("0.002")) == Decimal("0.02")
    assert apply_fee_rate(Decimal("0.25"), Decimal("0.002")) == Decimal("0.0005")


def test_exact_sum_has_no_float_drift():
    values = [Decimal("0.1")] * 10
    assert exact_sum(values) == Decimal("1.0")


def test_as_decimal_rejects_floats():
    with pytest.raises(TypeError):
        as_decimal(0.1)
    assert as_decimal("0.1") == Decimal("0.1")
    assert as_decimal(3) == Decimal(3)


def test_base_units_apply_adjustment_then_floor():
    # 0.02 * 10^9 * 0.99 = 19_800_000 exactly
    assert to_base_units(Decimal("0.02"), 9, Decimal("0.99")) == 19_800_000
    # 0.000000003 * 10^9 * 0.99 = 2.97 -> 2
    assert to_base_units(Decimal("0.000000003"), 9, Decimal("0.99")) == 2


def test_format_amount_is_plain_decimal_string():
    assert format_amount(Decimal("1E-9")) == "0.000000001"
    assert format_amount(Decimal("0.0200")) == "0.02"
    assert format_amount(Decimal("0E-9")) == "0"
    assert format_amount(Decimal("100")) == "100"

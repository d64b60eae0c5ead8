"""Tests for scaled arithmetic."""

from __future__ import annotations

import math

import pytest

from dtlsearch.scaled import NULL_SCALE, SCALE_FACTOR, SCALE_THRESHOLD, ScaledNumber


def test_addition_matches_floats():
    for a, b in [(0.25, 0.5), (1e-3, 3.0), (0.0, 2.0), (7.5, 1e-12)]:
        total = ScaledNumber(a) + ScaledNumber(b)
        assert float(total) == pytest.approx(a + b)


def test_multiply_then_divide_round_trip():
    a = ScaledNumber(0.3)
    for b in [0.5, 1e-5, 2.0]:
        assert float((a * b) / b) == pytest.approx(0.3)
    scaled = ScaledNumber(0.3, 2)
    back = (scaled * 1e-4) / 1e-4
    assert back.scale == 2
    assert back.mantissa == pytest.approx(0.3)


def test_multiplying_by_zero_is_null():
    assert (ScaledNumber(0.7) * 0.0).is_null()
    assert (ScaledNumber(0.7) * ScaledNumber(0.0)).is_null()
    assert (ScaledNumber(0.7) * ScaledNumber.null()).scale == NULL_SCALE


def test_zero_is_always_the_null_sentinel():
    for value in (ScaledNumber(), ScaledNumber(0.0), ScaledNumber(0.0, 3)):
        assert value.scale == NULL_SCALE
        assert value.is_null()
        assert value == ScaledNumber.null()
    assert ScaledNumber(1.0).scale == 0


def test_null_log_is_negative_infinity():
    assert ScaledNumber.null().log() == -math.inf
    assert ScaledNumber(0.0).log() == -math.inf


def test_log_accounts_for_scale():
    value = ScaledNumber(0.5, 3)
    assert value.log() == pytest.approx(math.log(0.5) + 3 * math.log(SCALE_THRESHOLD))


def test_rescale_keeps_log_value():
    value = ScaledNumber(1.0)
    expected = 0.0
    for _ in range(40):
        value *= 1e-10
        value.rescale()
        expected += math.log(1e-10)
    assert value.mantissa >= SCALE_THRESHOLD
    assert value.scale > 0
    assert value.log() == pytest.approx(expected)


def test_float_conversion_of_scaled_value_is_zero():
    assert float(ScaledNumber(0.5, 1)) == 0.0


def test_addition_drops_much_smaller_operand():
    big = ScaledNumber(0.5)
    tiny = ScaledNumber(0.5, 1)
    assert (big + tiny) == big
    assert (tiny + big) == big


def test_subtraction_collapses_roundoff_to_null():
    a = ScaledNumber(0.1)
    b = ScaledNumber(0.1 + 1e-12)
    assert (a - b).is_null()


def test_subtraction_below_zero_raises():
    with pytest.raises(ValueError):
        ScaledNumber(0.1) - ScaledNumber(0.5)
    with pytest.raises(ValueError):
        ScaledNumber(0.1, 1) - ScaledNumber(0.1)


def test_negative_construction_raises():
    with pytest.raises(ValueError):
        ScaledNumber(-1.0)


def test_ordering():
    null = ScaledNumber.null()
    tiny = ScaledNumber(0.9, 1)
    small = ScaledNumber(0.1)
    large = ScaledNumber(0.2)
    assert null < tiny < small < large
    assert sorted([large, null, small, tiny]) == [null, tiny, small, large]
    assert ScaledNumber(0.0) == null


def test_scale_factor_constant():
    assert SCALE_FACTOR == 2.0**256

"""Tests for rounding, division and validation primitives."""

import math

import pytest

from core.ledger.exceptions import InvalidCalculationInputError
from core.ledger.financial_calculator import (
    MAX_SAFE_INTEGER,
    bankers_rounding,
    detect_outlier,
    detect_precision_loss,
    safe_divide,
    validate_energy_amount,
    validate_energy_price,
    validate_timestamp,
)


class TestBankersRounding:
    @pytest.mark.parametrize(
        "value,decimals,expected",
        [
            (0.125, 2, 0.12),
            (0.375, 2, 0.38),
            (2.5, 0, 2.0),
            (3.5, 0, 4.0),
            (-0.125, 2, -0.12),
            (2.675, 2, 2.68),
            (1.23456, 3, 1.235),
            (0.0, 2, 0.0),
        ],
    )
    def test_rounds_half_to_even(self, value, decimals, expected):
        assert bankers_rounding(value, decimals) == expected

    def test_default_is_currency_decimals(self):
        assert bankers_rounding(10.005) == 10.0
        assert bankers_rounding(10.015) == 10.02

    @pytest.mark.parametrize(
        "value", [0.1234567, 99.995, -42.42424242, 1e-9, 123456.789, 0.5]
    )
    @pytest.mark.parametrize("decimals", [0, 2, 3, 4])
    def test_rounding_is_idempotent(self, value, decimals):
        once = bankers_rounding(value, decimals)
        assert bankers_rounding(once, decimals) == once

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
    def test_rejects_non_finite(self, value):
        with pytest.raises(InvalidCalculationInputError):
            bankers_rounding(value, 2)

    def test_rejects_values_too_large_to_scale(self):
        with pytest.raises(InvalidCalculationInputError, match="too large"):
            bankers_rounding(MAX_SAFE_INTEGER / 10, 2)

    def test_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            bankers_rounding(math.nan)


class TestSafeDivide:
    @pytest.mark.parametrize("numerator", [0.0, 1.0, -7.5, 1e12, 123.456])
    def test_zero_denominator_returns_default(self, numerator):
        assert safe_divide(numerator, 0, default_value=-1.0) == -1.0

    def test_near_zero_denominator_returns_default(self):
        assert safe_divide(1.0, 1e-12, default_value=99.0) == 99.0

    def test_rounds_quotient(self):
        assert safe_divide(1, 3) == 0.33
        assert safe_divide(1, 3, 0.0, 3) == 0.333
        assert safe_divide(10, 4, 0.0, 1) == 2.5

    @pytest.mark.parametrize(
        "numerator,denominator", [(math.nan, 1), (1, math.nan), (math.inf, 2), (2, -math.inf)]
    )
    def test_non_finite_operands_return_default(self, numerator, denominator):
        assert safe_divide(numerator, denominator, default_value=7.0) == 7.0

    def test_overflow_returns_default(self):
        assert safe_divide(1e308, 1e-9, default_value=0.0) == 0.0
        assert safe_divide(1e17, 1, default_value=-2.0) == -2.0


class TestPrecisionLoss:
    def test_identical_values_have_no_loss(self):
        assert detect_precision_loss(1.5, 1.5) == 0.0

    def test_relative_error(self):
        assert detect_precision_loss(3.0, 3.3) == pytest.approx(0.1)

    def test_zero_or_non_finite_original(self):
        assert detect_precision_loss(0.0, 5.0) == 0.0
        assert detect_precision_loss(math.nan, 5.0) == 0.0

    def test_below_tolerance_is_zero(self):
        assert detect_precision_loss(1.0, 1.0 + 1e-12) == 0.0


class TestValidators:
    @pytest.mark.parametrize("value", [0, math.nan, math.inf, 1001, -1500, True, None])
    def test_invalid_energy_amounts(self, value):
        result = validate_energy_amount(value)
        assert not result.is_valid
        assert result.error

    def test_small_energy_amount_warns(self):
        result = validate_energy_amount(0.000001)
        assert result.is_valid
        assert result.warnings == ["Energy amount very small: 1e-06 kWh"]

    def test_valid_energy_amount(self):
        result = validate_energy_amount(-5.0)
        assert result.is_valid
        assert result.warnings == []

    def test_energy_ceiling_is_configurable(self):
        assert not validate_energy_amount(30.0, max_energy_amount=20.0).is_valid

    @pytest.mark.parametrize("price", [-0.01, math.nan, math.inf])
    def test_invalid_prices(self, price):
        assert not validate_energy_price(price).is_valid

    def test_zero_price_warns(self):
        result = validate_energy_price(0)
        assert result.is_valid
        assert "zero" in result.warnings[0]

    def test_high_price_warns(self):
        result = validate_energy_price(6.0)
        assert result.is_valid
        assert "very high" in result.warnings[0]

    def test_timestamp_bounds(self):
        now = 1_700_000_000
        assert validate_timestamp(now, now=now).is_valid
        assert validate_timestamp(now + 299, now=now).is_valid
        assert not validate_timestamp(now + 301, now=now).is_valid
        assert validate_timestamp(now - 364 * 86400, now=now).is_valid
        assert not validate_timestamp(now - 366 * 86400, now=now).is_valid

    @pytest.mark.parametrize("timestamp", [0, -5, math.nan, math.inf])
    def test_invalid_timestamps(self, timestamp):
        assert not validate_timestamp(timestamp, now=1_700_000_000).is_valid


class TestOutlierDetection:
    def test_needs_three_samples(self):
        result = detect_outlier(100.0, [1.0, 2.0])
        assert not result.is_outlier
        assert result.z_score == 0.0

    def test_zero_spread_is_never_an_outlier(self):
        assert not detect_outlier(50.0, [1.0, 1.0, 1.0]).is_outlier

    def test_flags_values_far_from_history(self):
        history = [1.0, 1.1, 0.9, 1.0, 1.05]
        result = detect_outlier(10.0, history)
        assert result.is_outlier
        assert result.mean == pytest.approx(1.01)
        assert result.z_score > 2.5

    def test_typical_value_is_not_an_outlier(self):
        assert not detect_outlier(1.02, [1.0, 1.1, 0.9, 1.0, 1.05]).is_outlier

    def test_threshold_is_configurable(self):
        history = [1.0, 2.0, 3.0]  # mean 2, population std ~0.816
        assert not detect_outlier(4.0, history).is_outlier
        assert detect_outlier(4.0, history, threshold=2.0).is_outlier

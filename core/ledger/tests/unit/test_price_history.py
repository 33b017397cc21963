"""Tests for price snapshot recording and time-weighted price reconstruction."""

import math

import pytest

from core.ledger.models import PriceSnapshot
from core.ledger.price_history import (
    compute_time_weighted_price,
    get_price_at,
    record_price_snapshot,
)
from core.ledger.settings import PriceSettings

T0 = 1_700_000_000


def _history(*points):
    return [PriceSnapshot(ts=T0 + offset, price=price) for offset, price in points]


class TestRecordPriceSnapshot:
    def test_first_snapshot(self):
        history = record_price_snapshot([], T0, 0.25, now=T0)

        assert history == [PriceSnapshot(T0, 0.25)]

    def test_input_list_is_not_mutated(self):
        original = _history((0, 0.25))

        record_price_snapshot(original, T0 + 60, 0.30, now=T0 + 60)

        assert original == _history((0, 0.25))

    def test_unchanged_price_inside_dedup_window_is_skipped(self):
        history = record_price_snapshot(_history((0, 0.25)), T0 + 600, 0.25, now=T0 + 600)

        assert history == _history((0, 0.25))

    def test_unchanged_price_after_dedup_window_is_recorded(self):
        history = record_price_snapshot(
            _history((0, 0.25)), T0 + 3600, 0.25, now=T0 + 3600
        )

        assert len(history) == 2

    def test_price_change_is_recorded(self):
        history = record_price_snapshot(_history((0, 0.25)), T0 + 60, 0.30, now=T0 + 60)

        assert history[-1] == PriceSnapshot(T0 + 60, 0.30)

    def test_same_timestamp_replaces_last(self):
        history = record_price_snapshot(_history((0, 0.25)), T0, 0.40, now=T0)

        assert history == [PriceSnapshot(T0, 0.40)]

    def test_older_snapshot_is_rejected(self):
        history = record_price_snapshot(
            _history((0, 0.25), (600, 0.30)), T0 + 300, 0.50, now=T0 + 600
        )

        assert history == _history((0, 0.25), (600, 0.30))

    @pytest.mark.parametrize("price", [-0.01, math.nan, math.inf])
    def test_invalid_price_is_rejected(self, price):
        history = record_price_snapshot(_history((0, 0.25)), T0 + 60, price, now=T0 + 60)

        assert history == _history((0, 0.25))

    def test_zero_price_is_accepted(self):
        history = record_price_snapshot(_history((0, 0.25)), T0 + 60, 0.0, now=T0 + 60)

        assert history[-1].price == 0.0

    def test_rolling_window_drops_old_snapshots(self):
        settings = PriceSettings(history_hours=1)
        history = _history((0, 0.10), (1800, 0.20))

        history = record_price_snapshot(
            history, T0 + 5400, 0.30, now=T0 + 5400, settings=settings
        )

        assert history == _history((1800, 0.20), (5400, 0.30))

    def test_latest_snapshot_survives_the_window(self):
        settings = PriceSettings(history_hours=1)

        history = record_price_snapshot([], T0, 0.10, now=T0 + 100 * 3600, settings=settings)

        assert history == [PriceSnapshot(T0, 0.10)]

    def test_snapshot_cap(self):
        settings = PriceSettings(max_snapshots=3)
        history = []
        for i in range(5):
            history = record_price_snapshot(
                history, T0 + i * 60, 0.10 + i / 100, now=T0 + i * 60, settings=settings
            )

        assert [s.ts for s in history] == [T0 + 120, T0 + 180, T0 + 240]


class TestGetPriceAt:
    def test_before_first_snapshot_uses_fallback(self):
        assert get_price_at(_history((600, 0.25)), T0, fallback=0.3) == 0.3

    def test_empty_history(self):
        assert get_price_at([], T0) is None

    def test_snapshot_in_effect(self):
        history = _history((0, 0.10), (600, 0.20), (1200, 0.30))

        assert get_price_at(history, T0 + 600) == 0.20
        assert get_price_at(history, T0 + 900) == 0.20
        assert get_price_at(history, T0 + 99999) == 0.30


class TestTimeWeightedPrice:
    def test_two_segments(self):
        history = _history((0, 0.10), (1800, 0.30))

        price = compute_time_weighted_price(history, T0, T0 + 3600, fallback_price=1.0)

        assert price == pytest.approx(0.20)

    def test_interval_starting_mid_segment(self):
        history = _history((0, 0.10), (1800, 0.30))

        price = compute_time_weighted_price(
            history, T0 + 900, T0 + 2700, fallback_price=1.0
        )

        assert price == pytest.approx(0.20)

    def test_uneven_segments(self):
        history = _history((0, 0.10), (2700, 0.50))

        price = compute_time_weighted_price(history, T0, T0 + 3600, fallback_price=1.0)

        assert price == pytest.approx(0.75 * 0.10 + 0.25 * 0.50)

    def test_three_segments(self):
        history = _history((0, 0.10), (1200, 0.20), (2400, 0.60))

        price = compute_time_weighted_price(history, T0, T0 + 3600, fallback_price=1.0)

        assert price == pytest.approx(0.30)

    def test_single_price_is_returned_exactly(self):
        history = _history((0, 0.1), (600, 0.1), (1200, 0.1))

        assert compute_time_weighted_price(history, T0, T0 + 3600, 1.0) == 0.1

    def test_first_snapshot_covers_the_start_when_nothing_precedes_it(self):
        history = _history((1800, 0.30))

        assert compute_time_weighted_price(history, T0, T0 + 3600, 1.0) == 0.30

    def test_last_price_extends_to_interval_end(self):
        history = _history((0, 0.10), (600, 0.40))

        price = compute_time_weighted_price(history, T0 + 3600, T0 + 7200, 1.0)

        assert price == 0.40

    def test_snapshots_after_the_interval_are_ignored(self):
        history = _history((0, 0.10), (7200, 0.90))

        assert compute_time_weighted_price(history, T0, T0 + 3600, 1.0) == 0.10

    def test_empty_history_uses_fallback(self):
        assert compute_time_weighted_price([], T0, T0 + 3600, fallback_price=0.3) == 0.3

    @pytest.mark.parametrize("end_offset", [0, -60])
    def test_degenerate_interval_uses_fallback(self, end_offset):
        history = _history((0, 0.10))

        assert compute_time_weighted_price(history, T0, T0 + end_offset, 0.3) == 0.3

    def test_result_lies_between_extreme_prices(self):
        history = _history((0, 0.05), (300, 0.90), (1000, 0.15), (2000, 0.40))

        price = compute_time_weighted_price(history, T0 + 100, T0 + 3000, 1.0)

        assert 0.05 <= price <= 0.90

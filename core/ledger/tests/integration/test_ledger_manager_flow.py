"""End-to-end tests of LedgerManager: samples in, entries and reports out."""

import pytest

from core.ledger.ledger_manager import LedgerManager
from core.ledger.ledger_store import JsonFileLedgerStore
from core.ledger.models import EntryType, FlushReason
from core.ledger.settings import AccumulatorSettings
from core.ledger.tests.conftest import BASE_TS, make_sample
from core.ledger.time_utils import utc_day_key

NOW = BASE_TS + 2 * 86400
DEVICE = "battery-1"


def _run_hour(manager, device_id=DEVICE, price=0.25):
    """Init, one intermediate sample and one hourly flush."""
    outcomes = []
    for offset, input_raw, output_raw in (
        (0, 1000, 500),
        (1800, 1005, 500),
        (3600, 1010, 525),
    ):
        outcomes.append(
            manager.process_sample(
                device_id,
                make_sample(offset, input_raw, output_raw),
                current_price=price,
                now=NOW,
            )
        )
    return outcomes


def test_hourly_flush_produces_entries(manager):
    init, no_flush, flushed = _run_hour(manager)

    assert init.reason is FlushReason.INITIALIZED
    assert no_flush.reason is FlushReason.NO_FLUSH
    assert flushed.reason is FlushReason.TIME_INTERVAL
    assert flushed.flush.delta_input_raw == 10

    charging, discharging = flushed.entries
    assert charging.type is EntryType.CHARGING
    assert charging.energy_amount == 1.0
    assert charging.price_at_time == 0.25
    assert discharging.energy_amount == -2.5
    assert manager.get_entries(DEVICE) == flushed.entries


def test_state_is_persisted_after_each_sample(manager):
    _, no_flush, flushed = _run_hour(manager)

    state = manager.get_accumulator_state(DEVICE)

    assert state == flushed.state
    assert state.acc_start_timestamp_sec == BASE_TS + 3600
    assert state.acc_input_delta_raw == 0


def test_price_history_is_recorded_with_samples(manager):
    _run_hour(manager)

    history = manager.get_price_history(DEVICE)

    # The 1800 s sample is inside the dedup window for an unchanged price
    assert [s.ts for s in history] == [BASE_TS, BASE_TS + 3600]


def test_daily_stats_and_breakdown(manager):
    _run_hour(manager)

    (day,) = manager.get_daily_stats(DEVICE, now=NOW)
    assert day.date == utc_day_key(BASE_TS)
    assert day.total_charge_energy == 1.0
    assert day.total_discharge_energy == 2.5
    # 2.5 kWh * 0.25 = 0.625 rounds half to even
    assert day.total_savings == 0.62
    assert day.total_profit == 0.37
    assert len(day.events) == 2

    today = manager.get_today_stats(DEVICE, now=BASE_TS + 4000)
    assert today.date == day.date
    assert today.total_profit == 0.37

    breakdown = manager.get_detailed_breakdown(DEVICE, today=day.date)
    assert breakdown.cost == 0.25
    assert breakdown.charge_energy == 1.0


def test_today_without_entries_is_empty(manager):
    today = manager.get_today_stats(DEVICE, now=NOW)

    assert today.date == utc_day_key(NOW)
    assert today.events == []
    assert today.total_profit == 0.0


def test_summary_and_audit_trail(manager):
    _run_hour(manager)

    summary = manager.get_statistics_summary(DEVICE, now=NOW)
    records = manager.get_audit_trail(DEVICE, BASE_TS, NOW, now=NOW)

    assert summary.summary["total_events"] == 2
    assert summary.summary["average_price"] == 0.25
    assert len(records) == 2
    assert all(r.energy_valid for r in records)


def test_counter_reset_re_anchors_without_entries(manager):
    _run_hour(manager)

    outcome = manager.process_sample(DEVICE, make_sample(4000, 3, 1), now=NOW)

    assert outcome.reason is FlushReason.COUNTER_RESET
    assert outcome.entries == []
    assert manager.get_accumulator_state(DEVICE).acc_start_input_raw == 3
    assert len(manager.get_entries(DEVICE)) == 2


def test_out_of_order_sample_leaves_persisted_state(manager):
    _run_hour(manager)
    before = manager.get_accumulator_state(DEVICE)

    outcome = manager.process_sample(DEVICE, make_sample(60, 5000, 5000), now=NOW)

    assert outcome.reason is FlushReason.OUT_OF_ORDER
    assert manager.get_accumulator_state(DEVICE) == before


def test_devices_are_independent(manager):
    _run_hour(manager, "a")
    manager.process_sample("b", make_sample(0, 1, 1), now=NOW)

    assert manager.device_ids() == ["a", "b"]
    assert len(manager.get_entries("a")) == 2
    assert manager.get_entries("b") == []


def test_record_price(manager):
    history = manager.record_price(DEVICE, BASE_TS, 0.30, now=NOW)
    history = manager.record_price(DEVICE, BASE_TS + 60, 0.35, now=NOW)

    assert [s.price for s in history] == [0.30, 0.35]
    assert manager.get_price_history(DEVICE) == history


def test_flush_uses_time_weighted_price(manager):
    manager.process_sample(DEVICE, make_sample(0, 1000, 500), current_price=0.20, now=NOW)
    manager.process_sample(
        DEVICE, make_sample(1800, 1005, 500), current_price=0.40, now=NOW
    )

    outcome = manager.process_sample(DEVICE, make_sample(3600, 1010, 500), now=NOW)

    (entry,) = outcome.entries
    assert entry.price_at_time == pytest.approx(0.30)


def test_reset_statistics_keeps_accumulator(manager):
    _run_hour(manager)

    removed = manager.reset_statistics(DEVICE)

    assert removed == 2
    assert manager.get_entries(DEVICE) == []
    assert manager.get_accumulator_state(DEVICE) is not None


def test_retention_cleanup(manager):
    _run_hour(manager)
    _run_hour(manager, "other")

    reports = manager.run_retention_cleanup(now=NOW + 40 * 86400)

    assert set(reports) == {DEVICE, "other"}
    assert reports[DEVICE].entries_removed == 2
    assert manager.get_entries(DEVICE) == []


def test_retention_cleanup_single_device(manager):
    _run_hour(manager)
    _run_hour(manager, "other")

    reports = manager.run_retention_cleanup(DEVICE, now=NOW + 40 * 86400)

    assert list(reports) == [DEVICE]
    assert len(manager.get_entries("other")) == 2


def test_settings_round_trip(manager):
    manager.update_settings(
        {"accumulator": {"flush_interval_minutes": 15}, "price": {"currency": "SEK"}}
    )

    settings = manager.get_settings()

    assert settings["accumulator"]["flush_interval_minutes"] == 15
    assert settings["price"]["currency"] == "SEK"
    assert set(settings) == {"accumulator", "financial", "statistics", "price", "divisor"}


def test_invalid_settings_raise_value_error(manager):
    with pytest.raises(ValueError, match="Invalid settings"):
        manager.update_settings({"statistics": {"retention_days": 0}})


def test_delta_trigger_flush():
    manager = LedgerManager(
        accumulator_settings=AccumulatorSettings(min_delta_trigger_raw=20)
    )
    manager.process_sample(DEVICE, make_sample(0, 1000, 500), now=NOW)

    outcome = manager.process_sample(DEVICE, make_sample(300, 1025, 500), now=NOW)

    assert outcome.reason is FlushReason.DELTA_TRIGGER
    assert outcome.entries[0].energy_amount == 2.5
    assert outcome.entries[0].duration == 5


def test_json_store_persists_across_restarts(tmp_path):
    first = LedgerManager(store=JsonFileLedgerStore(tmp_path))
    _run_hour(first)

    second = LedgerManager(store=JsonFileLedgerStore(tmp_path))

    assert second.device_ids() == [DEVICE]
    assert second.get_accumulator_state(DEVICE) == first.get_accumulator_state(DEVICE)
    assert second.get_entries(DEVICE) == first.get_entries(DEVICE)

    outcome = second.process_sample(DEVICE, make_sample(7200, 1020, 525), now=NOW)
    assert outcome.reason is FlushReason.TIME_INTERVAL
    assert outcome.entries[0].energy_amount == 1.0
    assert len(second.get_entries(DEVICE)) == 3


def test_nan_sample_is_rejected_without_losing_import(manager):
    manager.process_sample(DEVICE, make_sample(0, 1000, 500), now=NOW)
    stored = manager.get_accumulator_state(DEVICE)

    rejected = manager.process_sample(
        DEVICE, make_sample(60, float("nan"), 500), current_price=0.3, now=NOW
    )

    assert rejected.reason is FlushReason.INVALID_SAMPLE
    assert not rejected.validation.is_valid
    assert rejected.state == stored
    assert manager.get_accumulator_state(DEVICE) == stored
    assert manager.get_price_history(DEVICE) == []

    flushed = manager.process_sample(DEVICE, make_sample(3600, 1010, 500), now=NOW)

    assert flushed.flush.delta_input_raw == 10
    assert flushed.entries[0].energy_amount == 1.0


@pytest.mark.parametrize("divisor", [0, -10, float("inf")])
def test_invalid_divisor_sample_is_rejected(manager, divisor):
    outcome = manager.process_sample(
        DEVICE, make_sample(0, 1000, 500, divisor=divisor), now=NOW
    )

    assert outcome.reason is FlushReason.INVALID_SAMPLE
    assert outcome.state is None
    assert "Divisor" in outcome.validation.error
    assert manager.device_ids() == []


def test_rejected_settings_update_changes_nothing(manager):
    with pytest.raises(ValueError, match="Invalid settings"):
        manager.update_settings({"accumulator": {"flush_interval_minutes": -5}})

    assert manager.accumulator_settings.flush_interval_minutes == 60

    with pytest.raises(ValueError):
        manager.update_settings(
            {
                "accumulator": {"flush_interval_minutes": 15},
                "statistics": {"retention_days": 0},
            }
        )

    assert manager.accumulator_settings.flush_interval_minutes == 60
    assert manager.statistics_settings.retention_days == 30


def test_settings_update_swaps_objects(manager):
    before = manager.accumulator_settings

    manager.update_settings(
        {
            "accumulator": {"flush_interval_minutes": 15},
            "financial": {"max_profit_magnitude": 5.0},
            "statistics": {"retention_days": 7},
        }
    )

    assert manager.accumulator_settings is not before
    assert before.flush_interval_minutes == 60
    assert manager.calculator.settings is manager.financial_settings
    assert manager.calculator.settings.max_profit_magnitude == 5.0
    assert manager.aggregator.settings is manager.statistics_settings
    assert manager.aggregator.settings.retention_days == 7


def test_retention_cleanup_records_memory_usage(manager):
    _run_hour(manager)

    manager.run_retention_cleanup(now=NOW)

    (report,) = manager.calculator.get_memory_history()
    assert report["timestamp"] == NOW
    assert report["audit_trail_size"] > 0

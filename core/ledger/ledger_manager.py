"""LedgerManager - per-device facade over the ledger engine.

Wires the accumulator, price history, flush processing and statistics
aggregation together for any number of devices. Every mutation of a device
record runs under that device's lock:

    acquire -> load record -> update -> save record -> release

so concurrent samples for the same device queue up instead of racing, and a
flushed interval is persisted before the next sample can see the state.
Different devices never block each other.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from .financial_calculator import FinancialCalculator
from .flush_processor import build_entries_from_flush
from .grid_counter_accumulator import update_accumulator, validate_sample
from .ledger_store import InMemoryLedgerStore, LedgerStore
from .models import (
    AccumulatorState,
    AuditTrailRecord,
    DailyStats,
    DetailedBreakdown,
    DeviceLedger,
    FlushReason,
    FlushResult,
    GridCounterSample,
    PriceSnapshot,
    StatisticsEntry,
    StatisticsMemoryReport,
    StatisticsSummary,
    ValidationResult,
)
from .price_history import record_price_snapshot
from .settings import (
    AccumulatorSettings,
    DivisorSettings,
    FinancialSettings,
    PriceSettings,
    StatisticsSettings,
)
from .statistics_aggregator import StatisticsAggregator
from .time_utils import today_key

logger = logging.getLogger(__name__)


@dataclass
class SampleOutcome:
    """Result of processing one counter sample."""

    device_id: str
    reason: FlushReason
    state: AccumulatorState | None
    flush: FlushResult | None = None
    entries: list[StatisticsEntry] = field(default_factory=list)
    validation: ValidationResult = field(default_factory=ValidationResult.ok)


class LedgerManager:
    """Processes samples and prices per device and serves statistics."""

    def __init__(
        self,
        store: LedgerStore | None = None,
        accumulator_settings: AccumulatorSettings | None = None,
        financial_settings: FinancialSettings | None = None,
        statistics_settings: StatisticsSettings | None = None,
        price_settings: PriceSettings | None = None,
        divisor_settings: DivisorSettings | None = None,
    ):
        """Initialize the manager.

        Args:
            store: Record storage (in-memory if omitted)
            accumulator_settings: Flush policy
            financial_settings: Precision and plausibility bounds
            statistics_settings: Retention and memory bounds
            price_settings: Price history bounds and fallback price
            divisor_settings: Divisor fallback ladder
        """
        self.store = store or InMemoryLedgerStore()
        self.accumulator_settings = accumulator_settings or AccumulatorSettings()
        self.financial_settings = financial_settings or FinancialSettings()
        self.statistics_settings = statistics_settings or StatisticsSettings()
        self.price_settings = price_settings or PriceSettings()
        self.divisor_settings = divisor_settings or DivisorSettings()

        self.calculator = FinancialCalculator(self.financial_settings)
        self.aggregator = StatisticsAggregator(self.statistics_settings, self.calculator)

        self._locks: dict[str, Lock] = {}
        self._registry_lock = Lock()
        self._settings_lock = Lock()

        logger.info(
            "LedgerManager initialized (flush interval %s min, retention %s days)",
            self.accumulator_settings.flush_interval_minutes,
            self.statistics_settings.retention_days,
        )

    def _device_lock(self, device_id: str) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(device_id)
            if lock is None:
                lock = Lock()
                self._locks[device_id] = lock
            return lock

    @contextmanager
    def _ledger(self, device_id: str, save: bool = True) -> Iterator[DeviceLedger]:
        """Hold the device lock around a load/update/save cycle."""
        with self._device_lock(device_id):
            ledger = self.store.load(device_id)
            yield ledger
            if save:
                self.store.save(device_id, ledger)

    def device_ids(self) -> list[str]:
        return self.store.device_ids()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def process_sample(
        self,
        device_id: str,
        sample: GridCounterSample,
        current_price: float | None = None,
        now: float | None = None,
    ) -> SampleOutcome:
        """Apply one counter sample and persist the outcome.

        Args:
            device_id: Device identity
            sample: Cumulative counter reading
            current_price: Price in effect at the sample, recorded before the update
            now: Reference time for retention and validation (defaults to current time)

        Returns:
            SampleOutcome with the accumulator reason and any new entries. A
            sample with non-finite counters or a non-positive divisor leaves
            the record untouched and carries the failed validation.
        """
        validation = validate_sample(sample)
        if not validation.is_valid:
            logger.warning(f"Device {device_id}: rejected sample ({validation.error})")
            return SampleOutcome(
                device_id=device_id,
                reason=FlushReason.INVALID_SAMPLE,
                state=self.get_accumulator_state(device_id),
                validation=validation,
            )

        with self._settings_lock:
            accumulator_settings = self.accumulator_settings
            price_settings = self.price_settings
            outlier_history_size = self.statistics_settings.outlier_history_size
            divisor_settings = self.divisor_settings

        with self._ledger(device_id) as ledger:
            if current_price is not None:
                ledger.price_history = record_price_snapshot(
                    ledger.price_history,
                    sample.timestamp_sec,
                    current_price,
                    now=now,
                    settings=price_settings,
                )

            update = update_accumulator(
                ledger.accumulator_state, sample, accumulator_settings
            )
            ledger.accumulator_state = update.state

            entries: list[StatisticsEntry] = []
            if update.flush is not None:
                historical_values = self.aggregator.get_historical_values(
                    ledger.entries, outlier_history_size
                )
                entries = build_entries_from_flush(
                    update.flush,
                    ledger.price_history,
                    price_settings.fallback_price,
                    self.aggregator,
                    historical_values=historical_values,
                    divisor_settings=divisor_settings,
                    now=now,
                )
                ledger.entries = self.aggregator.append_entries(
                    ledger.entries, entries, now=now
                )
                for entry in entries:
                    self.aggregator.log_statistics_entry(entry)

        if update.reason in (FlushReason.COUNTER_RESET, FlushReason.DIVISOR_CHANGED):
            logger.info(f"Device {device_id}: accumulator re-anchored ({update.reason.value})")
        elif update.reason.is_flush:
            logger.info(
                f"Device {device_id}: flushed {update.flush.duration_minutes:.1f} min "
                f"({update.reason.value}), {len(entries)} entries"
            )

        return SampleOutcome(
            device_id=device_id,
            reason=update.reason,
            state=update.state,
            flush=update.flush,
            entries=entries,
        )

    def record_price(
        self, device_id: str, ts: float, price: float, now: float | None = None
    ) -> list[PriceSnapshot]:
        """Record a price snapshot for a device and return its history."""
        with self._ledger(device_id) as ledger:
            ledger.price_history = record_price_snapshot(
                ledger.price_history, ts, price, now=now, settings=self.price_settings
            )
            return list(ledger.price_history)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_accumulator_state(self, device_id: str) -> AccumulatorState | None:
        with self._ledger(device_id, save=False) as ledger:
            return ledger.accumulator_state

    def get_entries(self, device_id: str) -> list[StatisticsEntry]:
        with self._ledger(device_id, save=False) as ledger:
            return list(ledger.entries)

    def get_price_history(self, device_id: str) -> list[PriceSnapshot]:
        with self._ledger(device_id, save=False) as ledger:
            return list(ledger.price_history)

    def get_daily_stats(self, device_id: str, now: float | None = None) -> list[DailyStats]:
        return self.aggregator.aggregate_daily_stats(self.get_entries(device_id), now)

    def get_today_stats(self, device_id: str, now: float | None = None) -> DailyStats:
        """Today's DailyStats, empty when there are no entries today."""
        today = today_key(now)
        for day in self.get_daily_stats(device_id, now):
            if day.date == today:
                return day
        return DailyStats(date=today)

    def get_detailed_breakdown(
        self, device_id: str, today: str | None = None
    ) -> DetailedBreakdown:
        return self.aggregator.calculate_detailed_breakdown(
            self.get_entries(device_id), today
        )

    def get_statistics_summary(
        self, device_id: str, now: float | None = None
    ) -> StatisticsSummary:
        return self.aggregator.get_statistics_summary(self.get_entries(device_id), now)

    def get_audit_trail(
        self,
        device_id: str,
        start_time: float,
        end_time: float,
        now: float | None = None,
    ) -> list[AuditTrailRecord]:
        return self.aggregator.get_calculation_audit_trail(
            self.get_entries(device_id), start_time, end_time, now
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def run_retention_cleanup(
        self, device_id: str | None = None, now: float | None = None
    ) -> dict[str, StatisticsMemoryReport]:
        """Apply retention and memory bounds to one device or all devices.

        Returns:
            Cleanup report per device
        """
        device_ids = [device_id] if device_id else self.store.device_ids()
        reports = {}

        for current_id in device_ids:
            with self._ledger(current_id) as ledger:
                result = self.aggregator.cleanup_old_entries(
                    ledger.entries,
                    self.statistics_settings.retention_days,
                    max_entries=self.statistics_settings.max_entries,
                    memory_config=self.statistics_settings,
                    now=now,
                )
                ledger.entries = result.cleaned_entries
                reports[current_id] = result.cleanup_report

        self.calculator.record_memory_usage(now)

        removed = sum(report.entries_removed for report in reports.values())
        logger.info(
            f"Retention cleanup finished for {len(reports)} devices, {removed} entries removed"
        )
        return reports

    def reset_statistics(self, device_id: str) -> int:
        """Drop all statistics entries of a device. Accumulator and prices are kept.

        Returns:
            Number of entries removed
        """
        with self._ledger(device_id) as ledger:
            removed = len(ledger.entries)
            ledger.entries = []

        logger.info(f"Device {device_id}: statistics reset, {removed} entries removed")
        return removed

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_settings(self) -> dict[str, Any]:
        return {
            "accumulator": self.accumulator_settings.asdict(),
            "financial": self.financial_settings.asdict(),
            "statistics": self.statistics_settings.asdict(),
            "price": self.price_settings.asdict(),
            "divisor": self.divisor_settings.asdict(),
        }

    def update_settings(self, settings: dict[str, Any]) -> None:
        """Update settings sections, all or nothing.

        Every section is validated as a copy first. Only when all of them pass
        are the new objects swapped in. Settings objects are never mutated in
        place, so a sample being processed on another thread keeps reading a
        complete section.

        Raises:
            ValueError: If a section contains invalid values
        """
        with self._settings_lock:
            current = {
                "accumulator": self.accumulator_settings,
                "financial": self.financial_settings,
                "statistics": self.statistics_settings,
                "price": self.price_settings,
                "divisor": self.divisor_settings,
            }
            try:
                candidates = {
                    name: section.updated(**settings[name])
                    for name, section in current.items()
                    if name in settings
                }
            except Exception as e:
                logger.error(f"Failed to update settings: {e}")
                raise ValueError(f"Invalid settings: {e}") from e

            for name, section in candidates.items():
                setattr(self, f"{name}_settings", section)
            self.calculator.settings = self.financial_settings
            self.aggregator.settings = self.statistics_settings

            logger.info(f"Settings updated successfully: {', '.join(candidates) or 'none'}")

# core/ledger/models.py
"""
Data models for the energy ledger.

This module contains dataclasses for counter samples, accumulator state,
flush results, statistics entries and the derived daily summaries, providing
type safety and clear interfaces between the accumulator, the financial
calculator and the statistics aggregator.

Records that are persisted by the caller (accumulator state, entries, price
snapshots) provide to_dict()/from_dict() so any storage can round-trip them.
"""

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

__all__ = [
    "AccumulatorState",
    "AccumulatorUpdate",
    "AuditTrailRecord",
    "CalculationAudit",
    "CalculationStep",
    "CleanupResult",
    "DailyAuditInfo",
    "DailyStats",
    "DetailedBreakdown",
    "DeviceLedger",
    "EntryAudit",
    "EntryType",
    "EntryValidationReport",
    "EntryValidationResult",
    "FlushReason",
    "FlushResult",
    "GridCounterSample",
    "PriceSnapshot",
    "StatisticsEntry",
    "StatisticsMemoryReport",
    "StatisticsSummary",
    "ValidationResult",
]


class FlushReason(str, Enum):
    """Outcome of a single accumulator update."""

    INITIALIZED = "initialized"
    OUT_OF_ORDER = "out_of_order"
    DIVISOR_CHANGED = "divisor_changed"
    COUNTER_RESET = "counter_reset"
    INVALID_SAMPLE = "invalid_sample"
    NO_FLUSH = "no_flush"
    DELTA_TRIGGER = "delta_trigger"
    TIME_INTERVAL = "time_interval"
    UTC_DAY_BOUNDARY = "utc_day_boundary"

    @property
    def is_flush(self) -> bool:
        return self in (
            FlushReason.DELTA_TRIGGER,
            FlushReason.TIME_INTERVAL,
            FlushReason.UTC_DAY_BOUNDARY,
        )


class EntryType(str, Enum):
    """Direction of an energy event."""

    CHARGING = "charging"  # grid import, a cost
    DISCHARGING = "discharging"  # grid export, a sale/saving


@dataclass(frozen=True)
class GridCounterSample:
    """One authoritative reading of the cumulative grid counters."""

    timestamp_sec: int
    input_raw: float  # cumulative grid import counter
    output_raw: float  # cumulative grid export counter
    divisor_raw_per_kwh: float


@dataclass(frozen=True)
class AccumulatorState:
    """Per-device accumulator state, persisted by the caller after every update.

    Invariant while open: last_input_raw >= acc_start_input_raw and
    last_output_raw >= acc_start_output_raw.
    """

    divisor_raw_per_kwh: float
    # Last accepted sample
    last_timestamp_sec: int
    last_input_raw: float
    last_output_raw: float
    # Anchor of the open interval
    acc_start_timestamp_sec: int
    acc_start_input_raw: float
    acc_start_output_raw: float
    # Raw deltas since the anchor
    acc_input_delta_raw: float = 0.0
    acc_output_delta_raw: float = 0.0

    @classmethod
    def anchored_at(cls, sample: GridCounterSample) -> "AccumulatorState":
        """Fresh state with anchor and last-sample fields set to the sample."""
        return cls(
            divisor_raw_per_kwh=sample.divisor_raw_per_kwh,
            last_timestamp_sec=sample.timestamp_sec,
            last_input_raw=sample.input_raw,
            last_output_raw=sample.output_raw,
            acc_start_timestamp_sec=sample.timestamp_sec,
            acc_start_input_raw=sample.input_raw,
            acc_start_output_raw=sample.output_raw,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AccumulatorState":
        return cls(**data)


@dataclass(frozen=True)
class FlushResult:
    """Totals of one closed accumulation interval. Produced once per flush."""

    start_timestamp_sec: int
    end_timestamp_sec: int
    duration_minutes: float
    start_input_raw: float
    end_input_raw: float
    delta_input_raw: float
    start_output_raw: float
    end_output_raw: float
    delta_output_raw: float
    divisor_raw_per_kwh: float

    @property
    def delta_input_kwh(self) -> float:
        """Grid import over the interval, unrounded."""
        return self.delta_input_raw / self.divisor_raw_per_kwh

    @property
    def delta_output_kwh(self) -> float:
        """Grid export over the interval, unrounded."""
        return self.delta_output_raw / self.divisor_raw_per_kwh


@dataclass(frozen=True)
class AccumulatorUpdate:
    """Result of update_accumulator().

    state is None only when the first sample of a device was rejected.
    """

    state: AccumulatorState | None
    reason: FlushReason
    flush: FlushResult | None = None
    validation: "ValidationResult" = field(default_factory=lambda: ValidationResult.ok())


@dataclass
class ValidationResult:
    """Validity of one input plus any non-fatal warnings."""

    is_valid: bool
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def ok(cls, warnings: list[str] | None = None) -> "ValidationResult":
        return cls(is_valid=True, warnings=list(warnings or []))

    @classmethod
    def fail(cls, error: str) -> "ValidationResult":
        return cls(is_valid=False, error=error)


@dataclass
class CalculationStep:
    """One named intermediate value of a calculation."""

    operation: str
    value: float


@dataclass
class CalculationAudit:
    """Trace of one financial calculation, kept in the calculator's ring buffer."""

    method: str
    input_values: dict[str, Any] = field(default_factory=dict)
    intermediate_steps: list[CalculationStep] = field(default_factory=list)
    final_result: float = 0.0
    precision_loss: float = 0.0  # relative error introduced by rounding
    validation: ValidationResult = field(default_factory=ValidationResult.ok)
    is_outlier: bool = False
    recovery_actions: list[str] = field(default_factory=list)

    def add_step(self, operation: str, value: float) -> None:
        self.intermediate_steps.append(CalculationStep(operation, value))

    @property
    def warnings(self) -> list[str]:
        return self.validation.warnings


@dataclass
class EntryAudit:
    """Audit summary embedded in each statistics entry."""

    calculation_method: str = "flush_meter_delta"
    precision_loss: float = 0.0
    validation_warnings: list[str] = field(default_factory=list)
    is_outlier: bool = False
    recovery_actions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class StatisticsEntry:
    """One charging or discharging event built from a flush.

    energy_amount is signed kWh: positive for charging, negative for discharging.
    """

    timestamp: float  # Unix seconds, end of interval
    type: EntryType
    energy_amount: float
    duration: float  # minutes
    price_at_time: float | None = None  # currency/kWh
    start_energy_meter: float | None = None
    end_energy_meter: float | None = None
    calculation_audit: EntryAudit | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "StatisticsEntry":
        audit = data.get("calculation_audit")
        return cls(
            timestamp=data["timestamp"],
            type=EntryType(data["type"]),
            energy_amount=data["energy_amount"],
            duration=data["duration"],
            price_at_time=data.get("price_at_time"),
            start_energy_meter=data.get("start_energy_meter"),
            end_energy_meter=data.get("end_energy_meter"),
            calculation_audit=EntryAudit(**audit) if audit else None,
        )


@dataclass
class DailyAuditInfo:
    """Per-day counts of audit findings."""

    validation_failures: int = 0
    precision_losses: int = 0
    outliers: int = 0
    recovery_actions: int = 0


@dataclass
class DailyStats:
    """Derived summary for one UTC day. Never persisted."""

    date: str  # YYYY-MM-DD
    total_charge_energy: float = 0.0  # kWh
    total_discharge_energy: float = 0.0  # kWh
    total_profit: float = 0.0  # currency, positive = profit
    total_savings: float = 0.0  # currency, discharging entries only
    events: list[StatisticsEntry] = field(default_factory=list)
    audit_info: DailyAuditInfo = field(default_factory=DailyAuditInfo)


@dataclass
class DetailedBreakdown:
    """Today's energy and money split by direction."""

    charge_energy: float = 0.0
    discharge_energy: float = 0.0
    savings: float = 0.0
    cost: float = 0.0
    net_profit: float = 0.0


@dataclass(frozen=True)
class PriceSnapshot:
    """Price in effect from ts onwards (until the next snapshot)."""

    ts: float
    price: float

    def to_dict(self) -> dict:
        return {"ts": self.ts, "price": self.price}

    @classmethod
    def from_dict(cls, data: dict) -> "PriceSnapshot":
        return cls(ts=data["ts"], price=data["price"])


@dataclass
class StatisticsMemoryReport:
    """Size of an entry list and the outcome of the last cleanup."""

    total_entries: int
    estimated_memory_bytes: int
    estimated_memory_mb: float
    oldest_entry_timestamp: float | None = None
    newest_entry_timestamp: float | None = None
    cleanup_performed: bool = False
    entries_removed: int = 0
    retention_days: int = 0
    is_near_limit: bool = False


@dataclass
class CleanupResult:
    """Extended result of cleanup_old_entries()."""

    cleaned_entries: list[StatisticsEntry]
    cleanup_report: StatisticsMemoryReport


@dataclass
class EntryValidationReport:
    """Counts from validate_and_clean_entries()."""

    total_entries: int = 0
    valid_entries: int = 0
    invalid_entries: int = 0
    warnings: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class EntryValidationResult:
    """Entries that passed validation plus the report."""

    cleaned_entries: list[StatisticsEntry]
    validation_report: EntryValidationReport


@dataclass
class AuditTrailRecord:
    """Re-validation of one entry for diagnostic reporting."""

    entry: StatisticsEntry
    energy_valid: bool
    profit_valid: bool
    timestamp_valid: bool
    precision_loss: float
    outlier_detected: bool
    recovery_actions: list[str]
    details: str


@dataclass
class StatisticsSummary:
    """Totals over a whole entry list plus aggregated audit counters."""

    summary: dict[str, float]
    audit: dict[str, Any]


@dataclass
class DeviceLedger:
    """Everything that must be persisted for one device."""

    accumulator_state: AccumulatorState | None = None
    entries: list[StatisticsEntry] = field(default_factory=list)
    price_history: list[PriceSnapshot] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "accumulator_state": (
                self.accumulator_state.to_dict() if self.accumulator_state else None
            ),
            "entries": [entry.to_dict() for entry in self.entries],
            "price_history": [snapshot.to_dict() for snapshot in self.price_history],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceLedger":
        state = data.get("accumulator_state")
        return cls(
            accumulator_state=AccumulatorState.from_dict(state) if state else None,
            entries=[StatisticsEntry.from_dict(e) for e in data.get("entries", [])],
            price_history=[
                PriceSnapshot.from_dict(p) for p in data.get("price_history", [])
            ],
        )

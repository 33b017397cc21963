"""Statistics aggregation over charging/discharging entries.

Turns the retained entry list into daily summaries, today's breakdown, audit
trails and summary reports, and enforces the retention and memory bounds on
that list. All functions take the entry list as an argument and return new
values: the caller owns the list and persists it.

Profit/savings for every entry goes through the FinancialCalculator, so the
same rounding and plausibility rules apply to reports as to ingestion.
"""

import json
import logging
from dataclasses import asdict, dataclass, field

from .financial_calculator import (
    PRECISION_THRESHOLD,
    FinancialCalculator,
    safe_divide,
    validate_timestamp,
)
from .models import (
    AuditTrailRecord,
    CalculationAudit,
    CleanupResult,
    DailyAuditInfo,
    DailyStats,
    DetailedBreakdown,
    EntryAudit,
    EntryType,
    EntryValidationReport,
    EntryValidationResult,
    StatisticsEntry,
    StatisticsMemoryReport,
    StatisticsSummary,
    ValidationResult,
)
from .settings import StatisticsSettings
from .time_utils import SECONDS_PER_DAY, format_timestamp, now_timestamp, today_key, utc_day_key

logger = logging.getLogger(__name__)

OUTLIER_CAP_FRACTION = 0.1  # outliers are capped to this share of max energy


@dataclass
class EntryEnergyResult:
    """Signed entry energy after outlier handling."""

    energy_amount: float
    audit: CalculationAudit
    warnings: list[str] = field(default_factory=list)


@dataclass
class EntryProfitResult:
    """Profit/savings of one entry."""

    profit_savings: float
    audit: CalculationAudit
    warnings: list[str] = field(default_factory=list)


def _round(value: float, decimals: int) -> float:
    return safe_divide(value, 1, value, decimals)


class StatisticsAggregator:
    """Aggregates statistics entries into daily and summary reports.

    Owns the FinancialCalculator used for per-entry profit/savings, so one
    aggregator (and its audit ring buffer) is shared by all devices of a
    LedgerManager.
    """

    def __init__(
        self,
        settings: StatisticsSettings | None = None,
        calculator: FinancialCalculator | None = None,
    ) -> None:
        self.settings = settings or StatisticsSettings()
        self.calculator = calculator or FinancialCalculator()

    @property
    def _financial(self):
        return self.calculator.settings

    # ------------------------------------------------------------------
    # Per-entry calculations
    # ------------------------------------------------------------------

    def calculate_entry_energy(
        self,
        entry_type: EntryType | str,
        start_meter: float | None = None,
        end_meter: float | None = None,
        divisor: float | None = None,
        power: float | None = None,
        time_interval_hours: float | None = None,
        historical_values: list[float] | None = None,
    ) -> EntryEnergyResult:
        """Calculate entry energy and cap it when it is an outlier.

        Args:
            entry_type: charging or discharging
            start_meter: Meter reading at interval start (meter-delta mode)
            end_meter: Meter reading at interval end (meter-delta mode)
            divisor: Raw units per kWh (meter-delta mode)
            power: Power in W (power-integration mode)
            time_interval_hours: Interval length (power-integration mode)
            historical_values: Recent absolute entry energies for outlier detection

        Returns:
            EntryEnergyResult, signed positive for charging and negative for discharging
        """
        entry_type = EntryType(entry_type)
        result = self.calculator.calculate_energy_amount(
            entry_type,
            start_meter=start_meter,
            end_meter=end_meter,
            divisor=divisor,
            power=power,
            time_interval_hours=time_interval_hours,
        )
        audit = result.audit
        warnings: list[str] = []
        magnitude = abs(result.energy_amount)

        if historical_values and magnitude > 0:
            outlier = self.calculator.detect_outlier(
                magnitude, historical_values, self.settings.outlier_threshold
            )
            if outlier.is_outlier:
                audit.is_outlier = True
                warnings.append(
                    f"Potential outlier detected: {magnitude:.3f} kWh "
                    f"(z-score: {outlier.z_score:.2f})"
                )
                capped = min(magnitude, self._financial.max_energy_amount * OUTLIER_CAP_FRACTION)
                if capped < magnitude:
                    audit.recovery_actions.append(f"Capped outlier value to {capped:.3f} kWh")
                    magnitude = capped
                logger.warning(warnings[-1])

        energy_amount = magnitude if entry_type is EntryType.CHARGING else -magnitude
        audit.final_result = energy_amount

        return EntryEnergyResult(
            energy_amount=energy_amount,
            audit=audit,
            warnings=warnings + audit.validation.warnings,
        )

    def calculate_entry_profit(
        self, entry: StatisticsEntry, now: float | None = None
    ) -> EntryProfitResult:
        """Profit (+) or cost (-) of one entry in currency.

        An entry without a price contributes 0 and is not counted as a
        validation failure.
        """
        if entry.price_at_time is None:
            audit = CalculationAudit(
                method="profit_savings",
                input_values={"energy_amount": entry.energy_amount, "price": None},
                validation=ValidationResult.ok(["No price data"]),
                recovery_actions=["Returned zero due to missing price"],
            )
            return EntryProfitResult(
                profit_savings=0.0,
                audit=audit,
                warnings=["No price data available for calculation"],
            )

        result = self.calculator.calculate_profit_savings(
            entry.energy_amount, entry.price_at_time, entry.type
        )
        audit = result.audit
        warnings = list(audit.validation.warnings)
        if not audit.validation.is_valid:
            warnings.append(audit.validation.error)

        timestamp_validation = validate_timestamp(entry.timestamp, now)
        if not timestamp_validation.is_valid:
            warnings.append(f"Invalid timestamp: {timestamp_validation.error}")
            audit.recovery_actions.append(
                "Proceeding with calculation despite invalid timestamp"
            )

        return EntryProfitResult(
            profit_savings=result.profit_savings, audit=audit, warnings=warnings
        )

    def create_statistics_entry(
        self,
        entry_type: EntryType | str,
        timestamp: float,
        energy_amount: float,
        duration: float,
        price_at_time: float | None = None,
        start_energy_meter: float | None = None,
        end_energy_meter: float | None = None,
        calculation_method: str = "enhanced_entry_creation",
        is_outlier: bool = False,
        precision_loss: float = 0.0,
        recovery_actions: list[str] | None = None,
        validation_warnings: list[str] | None = None,
        now: float | None = None,
    ) -> StatisticsEntry:
        """Build an entry, recording (not rejecting) any validation problem."""
        warnings = list(validation_warnings or [])
        actions = list(recovery_actions or [])

        timestamp_validation = validate_timestamp(timestamp, now)
        if not timestamp_validation.is_valid:
            warnings.append(f"Timestamp validation failed: {timestamp_validation.error}")
            actions.append("Using provided timestamp despite validation failure")

        energy_validation = self.calculator.validate_energy_amount(abs(energy_amount))
        if not energy_validation.is_valid:
            warnings.append(f"Energy validation failed: {energy_validation.error}")
            actions.append("Using provided energy amount despite validation failure")

        if price_at_time is not None:
            price_validation = self.calculator.validate_energy_price(price_at_time)
            if not price_validation.is_valid:
                warnings.append(f"Price validation failed: {price_validation.error}")
                actions.append("Using provided price despite validation failure")
            warnings.extend(price_validation.warnings)

        warnings.extend(energy_validation.warnings)

        return StatisticsEntry(
            timestamp=timestamp,
            type=EntryType(entry_type),
            energy_amount=energy_amount,
            duration=duration,
            price_at_time=price_at_time,
            start_energy_meter=start_energy_meter,
            end_energy_meter=end_energy_meter,
            calculation_audit=EntryAudit(
                calculation_method=calculation_method,
                precision_loss=precision_loss,
                validation_warnings=warnings,
                is_outlier=is_outlier,
                recovery_actions=actions,
            ),
        )

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def aggregate_daily_stats(
        self, entries: list[StatisticsEntry], now: float | None = None
    ) -> list[DailyStats]:
        """Group entries by UTC day into DailyStats, sorted by date.

        Energy totals use |energy_amount|. total_profit sums every entry's
        profit/savings and total_savings only the discharging ones.
        """
        days: dict[str, DailyStats] = {}

        for entry in entries:
            date_key = utc_day_key(entry.timestamp)
            day = days.get(date_key)
            if day is None:
                day = DailyStats(date=date_key)
                days[date_key] = day

            day.events.append(entry)
            if entry.type is EntryType.CHARGING:
                day.total_charge_energy += abs(entry.energy_amount)
            else:
                day.total_discharge_energy += abs(entry.energy_amount)

            profit = self.calculate_entry_profit(entry, now)
            if entry.type is EntryType.DISCHARGING:
                day.total_savings += profit.profit_savings
            day.total_profit += profit.profit_savings

            self._tally_audit(day.audit_info, profit.audit, entry.calculation_audit)

        daily_stats = sorted(days.values(), key=lambda d: d.date)
        for day in daily_stats:
            day.total_charge_energy = _round(
                day.total_charge_energy, self._financial.energy_amount_decimals
            )
            day.total_discharge_energy = _round(
                day.total_discharge_energy, self._financial.energy_amount_decimals
            )
            day.total_profit = _round(day.total_profit, self._financial.currency_decimals)
            day.total_savings = _round(day.total_savings, self._financial.currency_decimals)

        return daily_stats

    @staticmethod
    def _tally_audit(
        info: DailyAuditInfo,
        profit_audit: CalculationAudit,
        entry_audit: EntryAudit | None,
    ) -> None:
        if not profit_audit.validation.is_valid:
            info.validation_failures += 1

        precision_loss = max(
            profit_audit.precision_loss, entry_audit.precision_loss if entry_audit else 0.0
        )
        if precision_loss > PRECISION_THRESHOLD:
            info.precision_losses += 1

        if profit_audit.is_outlier or (entry_audit and entry_audit.is_outlier):
            info.outliers += 1

        info.recovery_actions += len(profit_audit.recovery_actions)
        if entry_audit:
            info.recovery_actions += len(entry_audit.recovery_actions)

    def calculate_detailed_breakdown(
        self, entries: list[StatisticsEntry], today: str | None = None
    ) -> DetailedBreakdown:
        """Today's charge/discharge energy, cost and savings.

        Args:
            entries: Statistics entries
            today: Day key to report (defaults to the current UTC day)
        """
        today = today or today_key()
        charge_energy = discharge_energy = savings = cost = 0.0

        for entry in entries:
            if utc_day_key(entry.timestamp) != today:
                continue
            amount = abs(entry.energy_amount)
            if entry.type is EntryType.CHARGING:
                charge_energy += amount
                if entry.price_at_time is not None:
                    cost += amount * entry.price_at_time
            else:
                discharge_energy += amount
                if entry.price_at_time is not None:
                    savings += amount * entry.price_at_time

        energy_decimals = self._financial.energy_amount_decimals
        currency_decimals = self._financial.currency_decimals
        return DetailedBreakdown(
            charge_energy=_round(charge_energy, energy_decimals),
            discharge_energy=_round(discharge_energy, energy_decimals),
            savings=_round(savings, currency_decimals),
            cost=_round(cost, currency_decimals),
            net_profit=_round(savings - cost, currency_decimals),
        )

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def cleanup_old_entries(
        self,
        entries: list[StatisticsEntry],
        retention_days: int,
        max_entries: int | None = None,
        memory_config: StatisticsSettings | None = None,
        now: float | None = None,
    ) -> list[StatisticsEntry] | CleanupResult:
        """Drop entries outside the retention window and the size bounds.

        Without max_entries only the time filter runs and the filtered list
        is returned. With max_entries the most recent entries are kept up to
        that count and then up to the memory budget, and a CleanupResult is
        returned.

        Args:
            entries: Statistics entries
            retention_days: Entries older than this many days are dropped
            max_entries: Entry count bound (enables the extended form)
            memory_config: Memory budget settings (defaults to this aggregator's)
            now: Reference time (defaults to current time)

        Returns:
            Filtered list, or CleanupResult in the extended form
        """
        now = now_timestamp() if now is None else now
        cutoff = now - retention_days * SECONDS_PER_DAY
        time_filtered = [entry for entry in entries if entry.timestamp >= cutoff]

        if max_entries is None:
            return time_filtered

        config = memory_config or self.settings
        kept = sorted(time_filtered, key=lambda e: e.timestamp)

        if len(kept) > max_entries:
            kept = kept[len(kept) - max_entries :]

        if (
            config.enable_proactive_cleanup
            and len(kept) * config.bytes_per_entry > config.max_memory_bytes
        ):
            budget_entries = int(config.max_memory_bytes // config.bytes_per_entry)
            kept = kept[len(kept) - budget_entries :] if budget_entries > 0 else []

        entries_removed = len(entries) - len(kept)
        report = self._memory_report(
            kept,
            retention_days=retention_days,
            near_limit_entries=max_entries * config.cleanup_threshold,
            bytes_per_entry=config.bytes_per_entry,
        )
        report.cleanup_performed = entries_removed > 0
        report.entries_removed = entries_removed

        if entries_removed:
            logger.info(
                "Statistics cleanup removed %d entries, retained %d (%.2f MB)",
                entries_removed,
                len(kept),
                report.estimated_memory_mb,
            )

        return CleanupResult(cleaned_entries=kept, cleanup_report=report)

    def append_entries(
        self,
        entries: list[StatisticsEntry],
        new_entries: list[StatisticsEntry],
        now: float | None = None,
    ) -> list[StatisticsEntry]:
        """Append entries and apply the configured retention bounds."""
        result = self.cleanup_old_entries(
            entries + new_entries,
            self.settings.retention_days,
            max_entries=self.settings.max_entries,
            memory_config=self.settings,
            now=now,
        )
        return result.cleaned_entries

    def generate_memory_report(
        self, entries: list[StatisticsEntry]
    ) -> StatisticsMemoryReport:
        """Size estimate of an entry list against the configured bounds."""
        return self._memory_report(
            entries,
            retention_days=self.settings.retention_days,
            near_limit_entries=self.settings.max_entries * self.settings.cleanup_threshold,
            bytes_per_entry=self.settings.bytes_per_entry,
        )

    @staticmethod
    def _memory_report(
        entries: list[StatisticsEntry],
        retention_days: int,
        near_limit_entries: float,
        bytes_per_entry: int,
    ) -> StatisticsMemoryReport:
        memory_bytes = len(entries) * bytes_per_entry
        timestamps = [entry.timestamp for entry in entries]
        return StatisticsMemoryReport(
            total_entries=len(entries),
            estimated_memory_bytes=memory_bytes,
            estimated_memory_mb=memory_bytes / (1024 * 1024),
            oldest_entry_timestamp=min(timestamps) if timestamps else None,
            newest_entry_timestamp=max(timestamps) if timestamps else None,
            retention_days=retention_days,
            is_near_limit=len(entries) > near_limit_entries,
        )

    # ------------------------------------------------------------------
    # Validation and reporting
    # ------------------------------------------------------------------

    def validate_and_clean_entries(
        self, entries: list[StatisticsEntry], now: float | None = None
    ) -> EntryValidationResult:
        """Keep only entries with a valid timestamp, energy amount and price."""
        report = EntryValidationReport(total_entries=len(entries))
        cleaned: list[StatisticsEntry] = []

        for index, entry in enumerate(entries):
            timestamp_validation = validate_timestamp(entry.timestamp, now)
            if not timestamp_validation.is_valid:
                report.errors.append(
                    f"Invalid timestamp at index {index}: {timestamp_validation.error}"
                )
                continue

            energy_validation = self.calculator.validate_energy_amount(
                abs(entry.energy_amount)
            )
            if not energy_validation.is_valid:
                report.errors.append(
                    f"Invalid energy amount at index {index}: {energy_validation.error}"
                )
                continue

            if entry.price_at_time is not None:
                price_validation = self.calculator.validate_energy_price(entry.price_at_time)
                if not price_validation.is_valid:
                    report.errors.append(
                        f"Invalid price at index {index}: {price_validation.error}"
                    )
                    continue
                report.warnings += len(price_validation.warnings)

            report.warnings += len(energy_validation.warnings)
            cleaned.append(entry)

        report.valid_entries = len(cleaned)
        report.invalid_entries = len(entries) - len(cleaned)
        if report.invalid_entries:
            logger.warning(
                f"Dropped {report.invalid_entries} invalid statistics entries "
                f"out of {report.total_entries}"
            )

        return EntryValidationResult(cleaned_entries=cleaned, validation_report=report)

    def get_calculation_audit_trail(
        self,
        entries: list[StatisticsEntry],
        start_time: float,
        end_time: float,
        now: float | None = None,
    ) -> list[AuditTrailRecord]:
        """Re-validate every entry with start_time <= timestamp < end_time."""
        records = []
        for entry in entries:
            if not start_time <= entry.timestamp < end_time:
                continue

            energy_valid = self.calculator.validate_energy_amount(
                abs(entry.energy_amount)
            ).is_valid
            timestamp_valid = validate_timestamp(entry.timestamp, now).is_valid
            profit = self.calculate_entry_profit(entry, now)
            profit_valid = profit.audit.validation.is_valid

            details = (
                f"Energy: {abs(entry.energy_amount):.3f} kWh "
                f"({'valid' if energy_valid else 'invalid'})"
            )
            if entry.price_at_time is not None:
                details += (
                    f", Profit/Savings: {profit.profit_savings:.2f} "
                    f"({'valid' if profit_valid else 'invalid'})"
                )
            details += (
                f", Timestamp: {format_timestamp(entry.timestamp)} "
                f"({'valid' if timestamp_valid else 'invalid'})"
            )

            precision_loss = profit.audit.precision_loss
            if precision_loss > PRECISION_THRESHOLD:
                details += f", Precision Loss: {precision_loss * 100:.4f}%"

            outlier_detected = bool(
                entry.calculation_audit and entry.calculation_audit.is_outlier
            )
            if outlier_detected:
                details += ", Outlier Detected"

            recovery_actions = list(profit.audit.recovery_actions)
            if recovery_actions:
                details += f", Recovery Actions: {len(recovery_actions)}"

            records.append(
                AuditTrailRecord(
                    entry=entry,
                    energy_valid=energy_valid,
                    profit_valid=profit_valid,
                    timestamp_valid=timestamp_valid,
                    precision_loss=precision_loss,
                    outlier_detected=outlier_detected,
                    recovery_actions=recovery_actions,
                    details=details,
                )
            )

        return records

    def get_statistics_summary(
        self, entries: list[StatisticsEntry], now: float | None = None
    ) -> StatisticsSummary:
        """Totals over all valid entries plus aggregated audit counters."""
        validation = self.validate_and_clean_entries(entries, now)
        cleaned = validation.cleaned_entries
        daily_stats = self.aggregate_daily_stats(cleaned, now)

        totals = DailyStats(date="all")
        for day in daily_stats:
            totals.total_charge_energy += day.total_charge_energy
            totals.total_discharge_energy += day.total_discharge_energy
            totals.total_profit += day.total_profit
            totals.total_savings += day.total_savings
            totals.audit_info.validation_failures += day.audit_info.validation_failures
            totals.audit_info.precision_losses += day.audit_info.precision_losses
            totals.audit_info.outliers += day.audit_info.outliers
            totals.audit_info.recovery_actions += day.audit_info.recovery_actions

        prices = [e.price_at_time for e in cleaned if e.price_at_time is not None]
        average_price = safe_divide(
            sum(prices), len(prices), 0.0, self._financial.energy_price_decimals
        )

        energy_decimals = self._financial.energy_amount_decimals
        currency_decimals = self._financial.currency_decimals
        return StatisticsSummary(
            summary={
                "total_events": len(cleaned),
                "total_charge_energy": _round(totals.total_charge_energy, energy_decimals),
                "total_discharge_energy": _round(
                    totals.total_discharge_energy, energy_decimals
                ),
                "total_profit": _round(totals.total_profit, currency_decimals),
                "total_savings": _round(totals.total_savings, currency_decimals),
                "average_price": average_price,
            },
            audit={
                **asdict(totals.audit_info),
                "invalid_entries": validation.validation_report.invalid_entries,
                "financial_calculator_stats": self.calculator.get_audit_statistics(),
                "memory_report": asdict(self.generate_memory_report(entries)),
            },
        )

    def get_historical_values(
        self, entries: list[StatisticsEntry], max_entries: int = 10
    ) -> list[float]:
        """Absolute energies of the most recent entries, for outlier detection."""
        recent = entries[-max_entries:] if max_entries > 0 else []
        return [abs(e.energy_amount) for e in recent if e.energy_amount != 0]

    def log_statistics_entry(
        self,
        entry: StatisticsEntry,
        transparency: bool | None = None,
        calculation_details: dict | None = None,
    ) -> None:
        """Log one entry, with calculation details in transparency mode."""
        if transparency is None:
            transparency = self.settings.transparency

        message = (
            f"[{format_timestamp(entry.timestamp)}] {entry.type.value.upper()} "
            f"- Energy: {abs(entry.energy_amount):.3f} kWh, Duration: {entry.duration} min"
        )
        if entry.price_at_time is None:
            logger.info(message + ", Price: N/A")
        else:
            profit = self.calculate_entry_profit(entry)
            logger.info(
                message
                + f", Price: {entry.price_at_time:.4f}/kWh, Profit/Savings: {profit.profit_savings:.2f}"
            )
            for warning in profit.warnings:
                logger.warning(f"  Warning: {warning}")
            for action in profit.audit.recovery_actions:
                logger.warning(f"  Recovery: {action}")

        if transparency and calculation_details:
            logger.info(f"  Calculation Method: {calculation_details.get('method')}")
            logger.info(
                f"  Inputs: {json.dumps(calculation_details.get('inputs', {}), default=str)}"
            )
            if calculation_details.get("intermediate_steps"):
                logger.info(
                    "  Intermediate Steps: "
                    + json.dumps(calculation_details["intermediate_steps"], default=str)
                )

        if entry.start_energy_meter is not None and entry.end_energy_meter is not None:
            logger.info(
                f"  Meter Reading: {entry.start_energy_meter} -> {entry.end_energy_meter}"
            )

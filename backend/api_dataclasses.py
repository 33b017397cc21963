"""API DataClasses with canonical camelCase field names."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from core.ledger.grid_counter_accumulator import validate_sample
from core.ledger.models import (
    DailyStats,
    DetailedBreakdown,
    GridCounterSample,
    StatisticsEntry,
)

logger = logging.getLogger(__name__)


@dataclass
class FormattedValue:
    """Formatted value structure for frontend display."""

    value: float
    display: str
    unit: str
    text: str


def create_formatted_value(
    value: float, unit_type: str, currency: str, precision: int | None = None
) -> FormattedValue:
    """Create FormattedValue with currency parameter.

    Args:
        value: The numeric value to format
        unit_type: Type of unit ("currency", "energy_kwh_only", "price")
        currency: Currency code (SEK, NOK, EUR, USD, etc.)
        precision: Override default decimal places (None = use defaults: currency=2, energy=3, price=4)
    """
    if unit_type == "currency":
        prec = precision if precision is not None else 2
        return FormattedValue(
            value=value,
            display=f"{value:,.{prec}f}",
            unit=currency,
            text=f"{value:,.{prec}f} {currency}",
        )
    elif unit_type == "energy_kwh_only":
        prec = precision if precision is not None else 3
        return FormattedValue(
            value=value,
            display=f"{value:.{prec}f}",
            unit="kWh",
            text=f"{value:.{prec}f} kWh",
        )
    elif unit_type == "price":
        prec = precision if precision is not None else 4
        price_unit = f"{currency}/kWh"
        return FormattedValue(
            value=value,
            display=f"{value:.{prec}f}",
            unit=price_unit,
            text=f"{value:.{prec}f} {price_unit}",
        )
    else:
        # Default fallback
        return FormattedValue(
            value=value, display=f"{value:.2f}", unit="", text=f"{value:.2f}"
        )


@dataclass
class APISampleRequest:
    """Counter sample as posted by a device adapter."""

    timestampSec: int
    inputRaw: float
    outputRaw: float
    divisorRawPerKwh: float
    currentPrice: float | None = None

    def to_internal(self) -> GridCounterSample:
        """Convert to a GridCounterSample.

        Raises:
            ValueError: If a counter is not a finite number or the divisor is not positive
        """
        timestamp = float(self.timestampSec)
        if not math.isfinite(timestamp):
            raise ValueError(f"timestampSec must be a finite number, got {self.timestampSec}")

        sample = GridCounterSample(
            timestamp_sec=int(timestamp),
            input_raw=float(self.inputRaw),
            output_raw=float(self.outputRaw),
            divisor_raw_per_kwh=float(self.divisorRawPerKwh),
        )
        validation = validate_sample(sample)
        if not validation.is_valid:
            raise ValueError(validation.error)
        return sample


@dataclass
class APIPriceRequest:
    """Price snapshot as posted by a price source."""

    ts: float
    price: float


@dataclass
class APIStatisticsEntry:
    """One charging/discharging event with display values."""

    timestamp: float
    type: str
    energyAmount: FormattedValue
    duration: float
    priceAtTime: FormattedValue | None
    startEnergyMeter: float | None
    endEnergyMeter: float | None
    calculationMethod: str | None
    isOutlier: bool
    validationWarnings: list[str]
    recoveryActions: list[str]

    @classmethod
    def from_internal(cls, entry: StatisticsEntry, currency: str) -> APIStatisticsEntry:
        audit = entry.calculation_audit
        return cls(
            timestamp=entry.timestamp,
            type=entry.type.value,
            energyAmount=create_formatted_value(
                entry.energy_amount, "energy_kwh_only", currency
            ),
            duration=entry.duration,
            priceAtTime=(
                create_formatted_value(entry.price_at_time, "price", currency)
                if entry.price_at_time is not None
                else None
            ),
            startEnergyMeter=entry.start_energy_meter,
            endEnergyMeter=entry.end_energy_meter,
            calculationMethod=audit.calculation_method if audit else None,
            isOutlier=audit.is_outlier if audit else False,
            validationWarnings=list(audit.validation_warnings) if audit else [],
            recoveryActions=list(audit.recovery_actions) if audit else [],
        )


@dataclass
class APIDailyStats:
    """Daily summary with display values."""

    date: str
    totalChargeEnergy: FormattedValue
    totalDischargeEnergy: FormattedValue
    totalProfit: FormattedValue
    totalSavings: FormattedValue
    eventCount: int
    auditInfo: dict
    events: list[APIStatisticsEntry]

    @classmethod
    def from_internal(
        cls, day: DailyStats, currency: str, include_events: bool = True
    ) -> APIDailyStats:
        return cls(
            date=day.date,
            totalChargeEnergy=create_formatted_value(
                day.total_charge_energy, "energy_kwh_only", currency
            ),
            totalDischargeEnergy=create_formatted_value(
                day.total_discharge_energy, "energy_kwh_only", currency
            ),
            totalProfit=create_formatted_value(day.total_profit, "currency", currency),
            totalSavings=create_formatted_value(day.total_savings, "currency", currency),
            eventCount=len(day.events),
            auditInfo={
                "validationFailures": day.audit_info.validation_failures,
                "precisionLosses": day.audit_info.precision_losses,
                "outliers": day.audit_info.outliers,
                "recoveryActions": day.audit_info.recovery_actions,
            },
            events=(
                [APIStatisticsEntry.from_internal(e, currency) for e in day.events]
                if include_events
                else []
            ),
        )


@dataclass
class APIDetailedBreakdown:
    """Today's breakdown with display values."""

    chargeEnergy: FormattedValue
    dischargeEnergy: FormattedValue
    savings: FormattedValue
    cost: FormattedValue
    netProfit: FormattedValue

    @classmethod
    def from_internal(
        cls, breakdown: DetailedBreakdown, currency: str
    ) -> APIDetailedBreakdown:
        return cls(
            chargeEnergy=create_formatted_value(
                breakdown.charge_energy, "energy_kwh_only", currency
            ),
            dischargeEnergy=create_formatted_value(
                breakdown.discharge_energy, "energy_kwh_only", currency
            ),
            savings=create_formatted_value(breakdown.savings, "currency", currency),
            cost=create_formatted_value(breakdown.cost, "currency", currency),
            netProfit=create_formatted_value(breakdown.net_profit, "currency", currency),
        )

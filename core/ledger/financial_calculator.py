"""Financial calculation utilities with controlled precision and safety checks.

Provides banker's rounding, zero division protection, input validation,
outlier detection and precision loss detection, plus the FinancialCalculator
that records every calculation in a bounded audit trail.

None of the calculation paths raise on bad input: failures are returned as a
zero result with a populated ValidationResult. bankers_rounding() is the only
function that raises, and safe_divide() absorbs that.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from threading import Lock
from typing import Any

import numpy as np

from .exceptions import InvalidCalculationInputError
from .models import CalculationAudit, EntryType, ValidationResult
from .settings import (
    CURRENCY_DECIMALS,
    DIVISOR_CANDIDATES,
    ENERGY_AMOUNT_DECIMALS,
    MAX_ENERGY_AMOUNT,
    MAX_ENERGY_PRICE,
    MIN_ENERGY_AMOUNT,
    OUTLIER_THRESHOLD,
    FinancialSettings,
)
from .time_utils import SECONDS_PER_DAY, now_timestamp

logger = logging.getLogger(__name__)

PRECISION_THRESHOLD = 1e-10
MAX_SAFE_INTEGER = 2**53 - 1
MAX_FUTURE_SKEW_SECONDS = 300
MAX_TIMESTAMP_AGE_SECONDS = 365 * SECONDS_PER_DAY
AUDIT_ENTRY_BYTES = 1500  # ~1.5 KB per audit entry estimate
MEMORY_HISTORY_SIZE = 100
MEMORY_GROWTH_ALERT_PERCENT = 50


@dataclass(frozen=True)
class OutlierResult:
    """z-score test of one value against its history."""

    is_outlier: bool
    z_score: float
    mean: float
    std_dev: float


@dataclass
class EnergyCalculation:
    """Signed energy amount (kWh) with its audit record."""

    energy_amount: float
    audit: CalculationAudit


@dataclass
class ProfitCalculation:
    """Signed profit/savings (currency) with its audit record."""

    profit_savings: float
    audit: CalculationAudit


@dataclass
class DivisorResolution:
    """Outcome of the divisor plausibility ladder."""

    divisor: float
    energy_kwh: float
    used_fallback: bool
    attempts: list[tuple[float, float]] = field(default_factory=list)
    recovery_actions: list[str] = field(default_factory=list)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _is_finite(value: Any) -> bool:
    return _is_number(value) and math.isfinite(value)


def bankers_rounding(value: float, decimals: int = CURRENCY_DECIMALS) -> float:
    """Round half to even at the given number of decimals.

    Rounding works on the shortest decimal representation of the float, so
    0.125 rounds to 0.12 and 0.375 to 0.38.

    Args:
        value: Number to round
        decimals: Number of decimal places

    Returns:
        Rounded number

    Raises:
        InvalidCalculationInputError: If value is non-finite or too large to
            scale without losing integer precision
    """
    if not _is_finite(value):
        raise InvalidCalculationInputError(value)

    if abs(value) * 10**decimals > MAX_SAFE_INTEGER:
        raise InvalidCalculationInputError(
            value, message=f"Value too large for safe rounding: {value}"
        )

    quantum = Decimal(1).scaleb(-decimals)
    try:
        rounded = Decimal(str(float(value))).quantize(quantum, rounding=ROUND_HALF_EVEN)
    except InvalidOperation as e:
        raise InvalidCalculationInputError(value) from e
    return float(rounded)


def safe_divide(
    numerator: float,
    denominator: float,
    default_value: float = 0.0,
    decimals: int = CURRENCY_DECIMALS,
) -> float:
    """Divide with zero protection and banker's rounding. Never raises.

    Returns default_value when either operand is non-finite, the denominator
    is (nearly) zero, or the quotient overflows.
    """
    if not _is_finite(numerator) or not _is_finite(denominator):
        return default_value

    if abs(denominator) < PRECISION_THRESHOLD:
        return default_value

    result = numerator / denominator
    if not math.isfinite(result) or abs(result) > MAX_SAFE_INTEGER:
        return default_value

    try:
        return bankers_rounding(result, decimals)
    except InvalidCalculationInputError:
        return default_value


def detect_precision_loss(
    original_value: float,
    calculated_value: float,
    tolerance: float = PRECISION_THRESHOLD,
) -> float:
    """Relative error between two values, or 0 when within tolerance."""
    if not _is_finite(original_value) or not _is_finite(calculated_value):
        return 0.0
    if original_value == 0:
        return 0.0

    relative_error = abs((calculated_value - original_value) / original_value)
    return relative_error if relative_error > tolerance else 0.0


def validate_energy_amount(
    energy_amount: float,
    max_energy_amount: float = MAX_ENERGY_AMOUNT,
    min_energy_amount: float = MIN_ENERGY_AMOUNT,
) -> ValidationResult:
    """Check that an energy amount (kWh) is a plausible single event."""
    if not _is_finite(energy_amount):
        return ValidationResult.fail("Energy amount must be a valid number")

    if energy_amount == 0:
        return ValidationResult.fail("Energy amount cannot be zero")

    if abs(energy_amount) > max_energy_amount:
        return ValidationResult.fail(
            f"Energy amount exceeds maximum: {energy_amount} kWh > {max_energy_amount} kWh"
        )

    warnings = []
    if abs(energy_amount) < min_energy_amount:
        warnings.append(f"Energy amount very small: {energy_amount} kWh")

    return ValidationResult.ok(warnings)


def validate_energy_price(
    price: float, max_energy_price: float = MAX_ENERGY_PRICE
) -> ValidationResult:
    """Check that an energy price (currency/kWh) is usable."""
    if not _is_finite(price):
        return ValidationResult.fail("Energy price must be a valid number")

    if price < 0:
        return ValidationResult.fail("Energy price cannot be negative")

    warnings = []
    if price > max_energy_price:
        warnings.append(f"Energy price very high: {price}/kWh > {max_energy_price}/kWh")
    if price == 0:
        warnings.append("Energy price is zero - calculations will show zero cost/savings")

    return ValidationResult.ok(warnings)


def validate_timestamp(timestamp: float, now: float | None = None) -> ValidationResult:
    """Check that a Unix timestamp is positive, not in the future and under a year old."""
    if now is None:
        now = now_timestamp()

    if not _is_finite(timestamp):
        return ValidationResult.fail("Timestamp must be a valid number")

    if timestamp <= 0:
        return ValidationResult.fail("Timestamp must be positive")

    if timestamp > now + MAX_FUTURE_SKEW_SECONDS:
        return ValidationResult.fail("Timestamp cannot be in the future")

    if timestamp < now - MAX_TIMESTAMP_AGE_SECONDS:
        return ValidationResult.fail("Timestamp is too old (over 1 year)")

    return ValidationResult.ok()


def detect_outlier(
    value: float,
    historical_values: list[float],
    threshold: float = OUTLIER_THRESHOLD,
) -> OutlierResult:
    """Flag value when its z-score against the history exceeds threshold.

    Needs at least three historical values and a non-zero spread.
    """
    if len(historical_values) < 3:
        return OutlierResult(is_outlier=False, z_score=0.0, mean=value, std_dev=0.0)

    history = np.asarray(historical_values, dtype=float)
    mean = float(np.mean(history))
    std_dev = float(np.std(history))  # population standard deviation

    if std_dev == 0:
        return OutlierResult(is_outlier=False, z_score=0.0, mean=mean, std_dev=std_dev)

    z_score = abs((value - mean) / std_dev)
    return OutlierResult(
        is_outlier=z_score > threshold, z_score=z_score, mean=mean, std_dev=std_dev
    )


class FinancialCalculator:
    """Energy and profit calculations with a bounded audit trail.

    The audit trail is a ring buffer: when it grows past the configured
    capacity only the most recent entries are retained. The bound is enforced
    on every append.
    """

    def __init__(self, settings: FinancialSettings | None = None) -> None:
        """Initialize the calculator.

        Args:
            settings: Precision and plausibility bounds (defaults if omitted)
        """
        self.settings = settings or FinancialSettings()
        self._audit_trail: list[CalculationAudit] = []
        self._lock = Lock()
        self._entries_evicted = 0
        self._memory_history: deque[dict] = deque(maxlen=MEMORY_HISTORY_SIZE)
        self._memory_baseline: dict | None = None

    # ------------------------------------------------------------------
    # Validation helpers bound to this calculator's settings
    # ------------------------------------------------------------------

    def validate_energy_amount(self, energy_amount: float) -> ValidationResult:
        return validate_energy_amount(
            energy_amount,
            max_energy_amount=self.settings.max_energy_amount,
            min_energy_amount=self.settings.min_energy_amount,
        )

    def validate_energy_price(self, price: float) -> ValidationResult:
        return validate_energy_price(price, max_energy_price=self.settings.max_energy_price)

    def detect_outlier(
        self,
        value: float,
        historical_values: list[float],
        threshold: float = OUTLIER_THRESHOLD,
    ) -> OutlierResult:
        return detect_outlier(value, historical_values, threshold)

    # ------------------------------------------------------------------
    # Calculations
    # ------------------------------------------------------------------

    def calculate_energy_amount(
        self,
        entry_type: EntryType | str,
        start_meter: float | None = None,
        end_meter: float | None = None,
        divisor: float | None = None,
        power: float | None = None,
        time_interval_hours: float | None = None,
    ) -> EnergyCalculation:
        """Calculate a signed energy amount in kWh.

        Meter-delta mode (start_meter, end_meter, divisor):
            energy = (end_meter - start_meter) / divisor, where both meters are
            cumulative counters that only increase
        Power-integration mode (power in W, time_interval_hours):
            energy = power / 1000 * time_interval_hours

        The result is positive for charging and negative for discharging.
        Any invalid input yields 0 with a failed validation in the audit.
        """
        entry_type = EntryType(entry_type)
        audit = CalculationAudit(
            method="energy_amount",
            input_values={
                "type": entry_type.value,
                "start_meter": start_meter,
                "end_meter": end_meter,
                "divisor": divisor,
                "power": power,
                "time_interval_hours": time_interval_hours,
            },
        )

        meter_inputs = {
            "start_meter": start_meter,
            "end_meter": end_meter,
            "divisor": divisor,
        }
        power_inputs = {"power": power, "time_interval_hours": time_interval_hours}

        if all(v is not None for v in meter_inputs.values()):
            audit.method = "meter_delta"
            magnitude = self._meter_delta_energy(start_meter, end_meter, divisor, audit)
        elif all(v is not None for v in power_inputs.values()):
            audit.method = "power_integration"
            magnitude = self._power_integration_energy(power, time_interval_hours, audit)
        else:
            provided_meter = [k for k, v in meter_inputs.items() if v is not None]
            missing = (
                [k for k, v in meter_inputs.items() if v is None]
                if provided_meter
                else [k for k, v in {**meter_inputs, **power_inputs}.items() if v is None]
            )
            audit.validation = ValidationResult.fail(
                "Missing inputs for energy calculation: " + ", ".join(missing)
            )
            magnitude = None

        energy_amount = 0.0
        if magnitude is not None:
            final_validation = self.validate_energy_amount(magnitude)
            audit.validation = final_validation
            if final_validation.is_valid:
                energy_amount = (
                    magnitude if entry_type is EntryType.CHARGING else -magnitude
                )

        audit.final_result = energy_amount
        if not audit.validation.is_valid:
            logger.warning(
                "Energy calculation rejected (%s): %s",
                audit.method,
                audit.validation.error,
            )

        self._record(audit)
        return EnergyCalculation(energy_amount=energy_amount, audit=audit)

    def _meter_delta_energy(
        self,
        start_meter: float,
        end_meter: float,
        divisor: float,
        audit: CalculationAudit,
    ) -> float | None:
        if not _is_finite(start_meter) or not _is_finite(end_meter):
            audit.validation = ValidationResult.fail("Meter readings must be valid numbers")
            return None

        if not _is_finite(divisor) or divisor <= 0:
            audit.validation = ValidationResult.fail(
                f"Divisor must be a positive number, got {divisor}"
            )
            return None

        delta = end_meter - start_meter
        audit.add_step("delta_calculation", delta)
        if delta == 0:
            audit.validation = ValidationResult.fail("Meter delta cannot be zero")
            return None

        if delta < 0:
            audit.validation = ValidationResult.fail(
                f"Meter delta negative (counter decreased): {start_meter} → {end_meter}"
            )
            return None

        exact = delta / divisor
        magnitude = safe_divide(delta, divisor, 0.0, self.settings.energy_amount_decimals)
        audit.add_step("energy_amount", magnitude)
        audit.precision_loss = detect_precision_loss(exact, magnitude)
        return magnitude

    def _power_integration_energy(
        self,
        power: float,
        time_interval_hours: float,
        audit: CalculationAudit,
    ) -> float | None:
        if not _is_finite(power) or power == 0:
            audit.validation = ValidationResult.fail(
                f"Power must be a non-zero number, got {power}"
            )
            return None

        if abs(power) > self.settings.max_power_w:
            audit.validation = ValidationResult.fail(
                f"Power exceeds maximum: {power} W > {self.settings.max_power_w} W"
            )
            return None

        if not _is_finite(time_interval_hours) or time_interval_hours <= 0:
            audit.validation = ValidationResult.fail(
                f"Time interval must be a positive number, got {time_interval_hours}"
            )
            return None

        decimals = self.settings.energy_amount_decimals
        power_kw = safe_divide(abs(power), 1000, 0.0, decimals)
        audit.add_step("power_kw", power_kw)

        exact = abs(power) / 1000 * time_interval_hours
        magnitude = safe_divide(power_kw * time_interval_hours, 1, 0.0, decimals)
        audit.add_step("energy_amount", magnitude)
        audit.precision_loss = detect_precision_loss(exact, magnitude)
        return magnitude

    def calculate_profit_savings(
        self,
        energy_amount: float,
        price: float | None,
        entry_type: EntryType | str,
    ) -> ProfitCalculation:
        """Calculate signed profit/savings for one energy event.

        Discharging (export) yields +energy*price, charging (import) yields
        -energy*price, rounded to currency decimals. Fails closed to 0 when
        price or energy is missing or invalid. Results beyond the sanity
        ceiling are capped and the cap is recorded as a recovery action.
        """
        entry_type = EntryType(entry_type)
        audit = CalculationAudit(
            method="profit_savings",
            input_values={
                "energy_amount": energy_amount,
                "price": price,
                "type": entry_type.value,
            },
        )

        profit_savings = 0.0
        energy_validation = self.validate_energy_amount(
            abs(energy_amount) if _is_number(energy_amount) else energy_amount
        )
        price_validation = (
            self.validate_energy_price(price)
            if price is not None
            else ValidationResult.fail("Energy price is missing")
        )

        if not energy_validation.is_valid:
            audit.validation = energy_validation
        elif not price_validation.is_valid:
            audit.validation = price_validation
        else:
            decimals = self.settings.currency_decimals
            exact = abs(energy_amount) * price
            gross = safe_divide(exact, 1, 0.0, decimals)
            audit.add_step("gross_amount", gross)
            audit.precision_loss = detect_precision_loss(exact, gross)

            profit_savings = gross if entry_type is EntryType.DISCHARGING else -gross
            audit.add_step("signed_result", profit_savings)

            ceiling = self.settings.max_profit_magnitude
            if abs(profit_savings) > ceiling:
                capped = math.copysign(ceiling, profit_savings)
                audit.recovery_actions.append(
                    f"Capped profit/savings {profit_savings:.2f} to {capped:.2f}"
                )
                logger.warning(
                    "Unusually high financial value %.2f capped to %.2f",
                    profit_savings,
                    capped,
                )
                profit_savings = capped
                audit.add_step("capped_result", profit_savings)

            audit.validation = ValidationResult.ok(
                energy_validation.warnings + price_validation.warnings
            )

        audit.final_result = profit_savings
        self._record(audit)
        return ProfitCalculation(profit_savings=profit_savings, audit=audit)

    def resolve_divisor(
        self,
        delta_raw: float,
        configured_divisor: float,
        candidates: tuple[float, ...] = DIVISOR_CANDIDATES,
        ceiling_kwh: float | None = None,
    ) -> DivisorResolution:
        """Convert a raw delta to kWh, falling back to candidate divisors if implausible.

        The configured divisor is tried first. A result is plausible when it is
        non-negative and (if a ceiling is given) not above ceiling_kwh. When no
        divisor yields a plausible value the configured divisor is kept.

        Args:
            delta_raw: Raw counter delta
            configured_divisor: Divisor reported with the sample
            candidates: Fallback divisors, tried in order
            ceiling_kwh: Plausibility ceiling, None disables the ladder

        Returns:
            DivisorResolution naming the divisor used and every attempt
        """
        decimals = self.settings.energy_amount_decimals
        audit = CalculationAudit(
            method="divisor_resolution",
            input_values={
                "delta_raw": delta_raw,
                "configured_divisor": configured_divisor,
                "candidates": list(candidates),
                "ceiling_kwh": ceiling_kwh,
            },
        )

        ladder = [configured_divisor] + [c for c in candidates if c != configured_divisor]
        if ceiling_kwh is None:
            ladder = ladder[:1]

        attempts: list[tuple[float, float]] = []
        chosen: tuple[float, float] | None = None
        for divisor in ladder:
            energy_kwh = safe_divide(delta_raw, divisor, math.nan, decimals)
            attempts.append((divisor, energy_kwh))
            audit.add_step(f"divisor_{divisor:g}", energy_kwh)
            plausible = math.isfinite(energy_kwh) and energy_kwh >= 0 and (
                ceiling_kwh is None or energy_kwh <= ceiling_kwh
            )
            if plausible:
                chosen = (divisor, energy_kwh)
                break

        recovery_actions = []
        if chosen is None:
            fallback_kwh = attempts[0][1] if math.isfinite(attempts[0][1]) else 0.0
            chosen = (configured_divisor, fallback_kwh)
            recovery_actions.append(
                f"No plausible divisor found, kept configured divisor {configured_divisor:g}"
            )
            audit.validation = ValidationResult.ok(
                [f"Implausible energy for every divisor candidate (delta {delta_raw} raw)"]
            )
        elif chosen[0] != configured_divisor:
            recovery_actions.append(
                f"Configured divisor {configured_divisor:g} implausible, used candidate {chosen[0]:g}"
            )
            logger.warning(
                "Divisor %s gave implausible energy, using candidate %s (%.3f kWh)",
                configured_divisor,
                chosen[0],
                chosen[1],
            )

        audit.final_result = chosen[1]
        audit.recovery_actions = recovery_actions
        self._record(audit)

        return DivisorResolution(
            divisor=chosen[0],
            energy_kwh=chosen[1],
            used_fallback=chosen[0] != configured_divisor,
            attempts=attempts,
            recovery_actions=recovery_actions,
        )

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def _record(self, audit: CalculationAudit) -> None:
        with self._lock:
            self._audit_trail.append(audit)
            self._enforce_max_size()

    def _enforce_max_size(self) -> None:
        """Trim to the most recent entries once capacity is exceeded."""
        if len(self._audit_trail) <= self.settings.audit_trail_capacity:
            return

        retain = self.settings.audit_trail_retain
        evicted = len(self._audit_trail) - retain
        self._audit_trail = self._audit_trail[-retain:]
        self._entries_evicted += evicted
        logger.debug(f"Evicted {evicted} audit entries (ring buffer bound)")

    def get_audit_trail(self) -> list[CalculationAudit]:
        """Copy of the full audit trail, oldest first."""
        with self._lock:
            return list(self._audit_trail)

    def get_audit_trail_limited(self, max_entries: int = 100) -> list[CalculationAudit]:
        """The most recent max_entries audit records."""
        with self._lock:
            return self._audit_trail[-max_entries:] if max_entries > 0 else []

    def clear_audit_trail(self) -> None:
        with self._lock:
            self._audit_trail = []

    def should_cleanup_memory(self) -> bool:
        """True when the audit trail is above 80% of capacity."""
        return len(self._audit_trail) > self.settings.audit_trail_capacity * 0.8

    def get_memory_usage_report(self) -> dict:
        """Estimated memory held by the audit trail."""
        size = len(self._audit_trail)
        return {
            "audit_trail_size": size,
            "audit_trail_memory": size * AUDIT_ENTRY_BYTES,
            "capacity": self.settings.audit_trail_capacity,
            "entries_evicted": self._entries_evicted,
        }

    def record_memory_usage(self, now: float | None = None) -> dict:
        """Append the current usage report to the memory history and check it.

        The first recorded report is the baseline. Alerts are raised when the
        trail is near capacity or has grown more than MEMORY_GROWTH_ALERT_PERCENT
        since the baseline.

        Returns:
            dict with the report, its change from the baseline and any alerts
        """
        report = self.get_memory_usage_report()
        report["timestamp"] = now_timestamp() if now is None else now

        with self._lock:
            if self._memory_baseline is None:
                self._memory_baseline = report
            self._memory_history.append(report)
            baseline = self._memory_baseline

        delta = report["audit_trail_size"] - baseline["audit_trail_size"]
        growth_percent = (
            delta / baseline["audit_trail_size"] * 100 if baseline["audit_trail_size"] else 0.0
        )

        alerts = []
        if self.should_cleanup_memory():
            alerts.append(
                f"Audit trail size ({report['audit_trail_size']}) is above 80% of "
                f"capacity ({self.settings.audit_trail_capacity})"
            )
        if growth_percent > MEMORY_GROWTH_ALERT_PERCENT:
            alerts.append(f"Audit trail grew by {growth_percent:.1f}% from baseline")

        for alert in alerts:
            logger.warning(f"Memory monitor: {alert}")

        return {
            "report": report,
            "audit_trail_delta": delta,
            "growth_percent": growth_percent,
            "alerts": alerts,
        }

    def get_memory_history(self, count: int = 10) -> list[dict]:
        """The most recent recorded memory reports, oldest first."""
        with self._lock:
            history = list(self._memory_history)
        return history[-count:] if count > 0 else []

    def force_memory_cleanup(self) -> dict:
        """Shrink the audit trail to half its capacity when it is near the limit.

        Returns:
            dict with cleanup_performed, memory_before, memory_after and entries_removed
        """
        memory_before = self.get_memory_usage_report()
        cleanup_performed = self.should_cleanup_memory()

        if cleanup_performed:
            keep = self.settings.audit_trail_capacity // 2
            with self._lock:
                removed = max(len(self._audit_trail) - keep, 0)
                self._audit_trail = self._audit_trail[-keep:] if keep > 0 else []
                self._entries_evicted += removed
            logger.info(f"Forced audit trail cleanup removed {removed} entries")

        memory_after = self.get_memory_usage_report()
        return {
            "cleanup_performed": cleanup_performed,
            "memory_before": memory_before,
            "memory_after": memory_after,
            "entries_removed": memory_before["audit_trail_size"]
            - memory_after["audit_trail_size"],
        }

    def get_audit_statistics(self) -> dict:
        """Counts of failed validations, precision losses and warnings in the trail."""
        trail = self.get_audit_trail()
        failed_validations = sum(1 for a in trail if not a.validation.is_valid)
        precision_losses = sum(1 for a in trail if a.precision_loss > PRECISION_THRESHOLD)
        warnings = sum(len(a.validation.warnings) for a in trail)

        return {
            "total_calculations": len(trail),
            "failed_validations": failed_validations,
            "precision_losses": precision_losses,
            "warnings": warnings,
            "memory_usage": {
                "audit_trail_size": len(trail),
                "estimated_memory_bytes": len(trail) * AUDIT_ENTRY_BYTES,
                "is_near_limit": self.should_cleanup_memory(),
            },
        }

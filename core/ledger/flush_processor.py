"""Build statistics entries from an accumulator flush.

Grid import over the flushed interval becomes a charging entry, grid export a
discharging entry. Each entry carries the time-weighted price over the
interval and the raw meter readings for traceability.
"""

import logging

from .models import EntryType, FlushResult, PriceSnapshot, StatisticsEntry
from .price_history import compute_time_weighted_price
from .settings import DivisorSettings
from .statistics_aggregator import StatisticsAggregator

logger = logging.getLogger(__name__)


def build_entries_from_flush(
    flush: FlushResult,
    price_history: list[PriceSnapshot],
    fallback_price: float,
    aggregator: StatisticsAggregator,
    historical_values: list[float] | None = None,
    divisor_settings: DivisorSettings | None = None,
    now: float | None = None,
) -> list[StatisticsEntry]:
    """Convert one FlushResult into zero, one or two statistics entries.

    Args:
        flush: Closed accumulation interval
        price_history: Price snapshots of the device
        fallback_price: Price used when no history covers the interval
        aggregator: Aggregator whose calculator performs the conversion
        historical_values: Recent absolute entry energies for outlier detection
        divisor_settings: Divisor ladder, applied only when enabled
        now: Reference time for timestamp validation

    Returns:
        Entries for every direction with a positive, valid delta
    """
    price = compute_time_weighted_price(
        price_history,
        flush.start_timestamp_sec,
        flush.end_timestamp_sec,
        fallback_price,
    )
    duration = int(round(flush.duration_minutes))

    directions = (
        (EntryType.CHARGING, flush.start_input_raw, flush.end_input_raw, flush.delta_input_raw),
        (
            EntryType.DISCHARGING,
            flush.start_output_raw,
            flush.end_output_raw,
            flush.delta_output_raw,
        ),
    )

    entries = []
    for entry_type, start_raw, end_raw, delta_raw in directions:
        if delta_raw <= 0:
            continue

        divisor = flush.divisor_raw_per_kwh
        recovery_actions: list[str] = []
        if divisor_settings is not None and divisor_settings.enabled:
            resolution = aggregator.calculator.resolve_divisor(
                delta_raw,
                divisor,
                candidates=divisor_settings.candidates,
                ceiling_kwh=divisor_settings.effective_ceiling_kwh,
            )
            divisor = resolution.divisor
            recovery_actions.extend(resolution.recovery_actions)

        energy = aggregator.calculate_entry_energy(
            entry_type,
            start_meter=start_raw,
            end_meter=end_raw,
            divisor=divisor,
            historical_values=historical_values,
        )
        if energy.energy_amount == 0:
            logger.warning(
                "Skipping %s entry for flush ending %s: %s",
                entry_type.value,
                flush.end_timestamp_sec,
                energy.audit.validation.error,
            )
            continue

        entries.append(
            aggregator.create_statistics_entry(
                entry_type,
                timestamp=flush.end_timestamp_sec,
                energy_amount=energy.energy_amount,
                duration=duration,
                price_at_time=price,
                start_energy_meter=start_raw,
                end_energy_meter=end_raw,
                calculation_method="flush_meter_delta",
                is_outlier=energy.audit.is_outlier,
                precision_loss=energy.audit.precision_loss,
                recovery_actions=recovery_actions + energy.audit.recovery_actions,
                validation_warnings=energy.warnings,
                now=now,
            )
        )

    return entries

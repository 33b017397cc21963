"""Grid counter accumulator.

Turns authoritative cumulative grid counters (import and export) into bounded
interval deltas:

- Samples with non-finite counters or a non-positive divisor are rejected.
- First sample initializes the baseline.
- Out-of-order timestamps are ignored.
- A divisor change re-anchors (prevents mixing units).
- Any counter decrease is a reset (device reboot or rollover) and re-anchors.
- Otherwise deltas accumulate, and the interval is flushed on a delta trigger,
  after the flush interval, or when the UTC day changes.

update_accumulator() is pure: the caller owns and persists the state.
"""

import logging
import math
from dataclasses import replace

from .models import (
    AccumulatorState,
    AccumulatorUpdate,
    FlushReason,
    FlushResult,
    GridCounterSample,
    ValidationResult,
)
from .settings import AccumulatorSettings
from .time_utils import SECONDS_PER_MINUTE, utc_day_key

logger = logging.getLogger(__name__)


def _is_finite(value) -> bool:
    return (
        isinstance(value, int | float)
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def validate_sample(sample: GridCounterSample) -> ValidationResult:
    """Check that a sample can be accumulated at all.

    NaN slips through every comparison in the transition rules, so it has to
    be caught before them.
    """
    if not _is_finite(sample.timestamp_sec):
        return ValidationResult.fail(
            f"Sample timestamp must be a finite number, got {sample.timestamp_sec}"
        )
    if not _is_finite(sample.input_raw) or not _is_finite(sample.output_raw):
        return ValidationResult.fail(
            f"Counter values must be finite numbers, got input {sample.input_raw}, "
            f"output {sample.output_raw}"
        )
    if not _is_finite(sample.divisor_raw_per_kwh) or sample.divisor_raw_per_kwh <= 0:
        return ValidationResult.fail(
            f"Divisor must be a positive number, got {sample.divisor_raw_per_kwh}"
        )
    return ValidationResult.ok()


def _flush_reason(
    state: AccumulatorState,
    sample: GridCounterSample,
    options: AccumulatorSettings,
) -> FlushReason:
    """Pick the flush trigger, delta trigger first since it is the most time-sensitive."""
    trigger = options.min_delta_trigger_raw
    if trigger is not None and (
        state.acc_input_delta_raw >= trigger or state.acc_output_delta_raw >= trigger
    ):
        return FlushReason.DELTA_TRIGGER

    duration_minutes = (
        sample.timestamp_sec - state.acc_start_timestamp_sec
    ) / SECONDS_PER_MINUTE
    if duration_minutes >= options.flush_interval_minutes:
        return FlushReason.TIME_INTERVAL

    if utc_day_key(sample.timestamp_sec) != utc_day_key(state.acc_start_timestamp_sec):
        return FlushReason.UTC_DAY_BOUNDARY

    return FlushReason.NO_FLUSH


def update_accumulator(
    previous_state: AccumulatorState | None,
    sample: GridCounterSample,
    options: AccumulatorSettings | None = None,
) -> AccumulatorUpdate:
    """Apply one counter sample to the accumulator state.

    Args:
        previous_state: State returned by the previous call, or None for a new device
        sample: Cumulative counter reading
        options: Flush policy (defaults to a 60 minute interval, no delta trigger)

    Returns:
        AccumulatorUpdate with the new state, the reason and an optional flush
    """
    if options is None:
        options = AccumulatorSettings()

    validation = validate_sample(sample)
    if not validation.is_valid:
        logger.warning("Rejecting sample at %s: %s", sample.timestamp_sec, validation.error)
        return AccumulatorUpdate(
            state=previous_state,
            reason=FlushReason.INVALID_SAMPLE,
            validation=validation,
        )

    if previous_state is None:
        return AccumulatorUpdate(
            state=AccumulatorState.anchored_at(sample),
            reason=FlushReason.INITIALIZED,
        )

    if sample.timestamp_sec <= previous_state.last_timestamp_sec:
        logger.debug(
            "Ignoring out-of-order sample at %s (last accepted %s)",
            sample.timestamp_sec,
            previous_state.last_timestamp_sec,
        )
        return AccumulatorUpdate(state=previous_state, reason=FlushReason.OUT_OF_ORDER)

    if sample.divisor_raw_per_kwh != previous_state.divisor_raw_per_kwh:
        logger.info(
            "Divisor changed %s → %s, re-anchoring accumulator",
            previous_state.divisor_raw_per_kwh,
            sample.divisor_raw_per_kwh,
        )
        return AccumulatorUpdate(
            state=AccumulatorState.anchored_at(sample),
            reason=FlushReason.DIVISOR_CHANGED,
        )

    delta_input = sample.input_raw - previous_state.last_input_raw
    delta_output = sample.output_raw - previous_state.last_output_raw

    if delta_input < 0 or delta_output < 0:
        logger.info(
            "Detected counter reset: input %s → %s, output %s → %s",
            previous_state.last_input_raw,
            sample.input_raw,
            previous_state.last_output_raw,
            sample.output_raw,
        )
        return AccumulatorUpdate(
            state=AccumulatorState.anchored_at(sample),
            reason=FlushReason.COUNTER_RESET,
        )

    next_state = replace(
        previous_state,
        last_timestamp_sec=sample.timestamp_sec,
        last_input_raw=sample.input_raw,
        last_output_raw=sample.output_raw,
        acc_input_delta_raw=previous_state.acc_input_delta_raw + delta_input,
        acc_output_delta_raw=previous_state.acc_output_delta_raw + delta_output,
    )

    reason = _flush_reason(next_state, sample, options)
    if reason is FlushReason.NO_FLUSH:
        return AccumulatorUpdate(state=next_state, reason=reason)

    flush = FlushResult(
        start_timestamp_sec=next_state.acc_start_timestamp_sec,
        end_timestamp_sec=sample.timestamp_sec,
        duration_minutes=(sample.timestamp_sec - next_state.acc_start_timestamp_sec)
        / SECONDS_PER_MINUTE,
        start_input_raw=next_state.acc_start_input_raw,
        end_input_raw=next_state.acc_start_input_raw + next_state.acc_input_delta_raw,
        delta_input_raw=next_state.acc_input_delta_raw,
        start_output_raw=next_state.acc_start_output_raw,
        end_output_raw=next_state.acc_start_output_raw
        + next_state.acc_output_delta_raw,
        delta_output_raw=next_state.acc_output_delta_raw,
        divisor_raw_per_kwh=next_state.divisor_raw_per_kwh,
    )

    logger.debug(
        "Flush (%s): %.1f min, import Δ%s raw, export Δ%s raw",
        reason.value,
        flush.duration_minutes,
        flush.delta_input_raw,
        flush.delta_output_raw,
    )

    # Re-anchor at the flush boundary
    return AccumulatorUpdate(
        state=AccumulatorState.anchored_at(sample),
        reason=reason,
        flush=flush,
    )

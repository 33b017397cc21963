"""Time-weighted price reconstruction.

Price history is a time-ordered list of PriceSnapshot owned by the caller
(persisted per device). Each snapshot's price is in effect from its ts until
the next snapshot. The functions here never mutate the list they are given.
"""

import logging
import math
from bisect import bisect_right

from .models import PriceSnapshot
from .settings import PriceSettings
from .time_utils import SECONDS_PER_HOUR, format_timestamp, now_timestamp

logger = logging.getLogger(__name__)


def record_price_snapshot(
    history: list[PriceSnapshot],
    ts: float,
    price: float,
    now: float | None = None,
    settings: PriceSettings | None = None,
) -> list[PriceSnapshot]:
    """Append a price snapshot, returning the new bounded history.

    The snapshot is skipped when the price is unchanged and the last snapshot
    is younger than the dedup window. Invalid prices (negative, non-finite)
    and snapshots older than the last one are rejected. A snapshot at the
    same ts as the last one replaces it.

    Args:
        history: Current history, oldest first
        ts: Unix seconds the price takes effect
        price: Price in currency/kWh
        now: Reference time for the rolling window (defaults to current time)
        settings: Window, dedup and size bounds

    Returns:
        New history list, trimmed to the rolling window and snapshot cap
    """
    settings = settings or PriceSettings()
    updated = list(history)

    if not isinstance(price, int | float) or not math.isfinite(price) or price < 0:
        logger.warning(f"Rejected invalid price {price} at {format_timestamp(ts)}")
        return updated

    if updated:
        last = updated[-1]
        if ts < last.ts:
            logger.debug(
                "Rejected price snapshot at %s older than last snapshot %s",
                ts,
                last.ts,
            )
            return updated
        if price == last.price and ts - last.ts < settings.dedup_seconds:
            return updated
        if ts == last.ts:
            updated.pop()

    updated.append(PriceSnapshot(ts=ts, price=price))
    return _trim_history(updated, now_timestamp() if now is None else now, settings)


def _trim_history(
    history: list[PriceSnapshot], now: float, settings: PriceSettings
) -> list[PriceSnapshot]:
    cutoff = now - settings.history_hours * SECONDS_PER_HOUR
    trimmed = [snapshot for snapshot in history if snapshot.ts >= cutoff]

    # Never drop the price currently in effect
    if not trimmed and history:
        trimmed = history[-1:]

    if len(trimmed) > settings.max_snapshots:
        trimmed = trimmed[-settings.max_snapshots :]

    removed = len(history) - len(trimmed)
    if removed:
        logger.debug(f"Trimmed {removed} price snapshots outside the rolling window")
    return trimmed


def get_price_at(
    history: list[PriceSnapshot], ts: float, fallback: float | None = None
) -> float | None:
    """Price in effect at ts: the last snapshot at or before it, else fallback."""
    index = bisect_right([snapshot.ts for snapshot in history], ts) - 1
    if index < 0:
        return fallback
    return history[index].price


def compute_time_weighted_price(
    history: list[PriceSnapshot],
    start_sec: float,
    end_sec: float,
    fallback_price: float,
) -> float:
    """Average price over [start_sec, end_sec), weighted by time in effect.

    Starts from the last snapshot at or before start_sec (or the first
    snapshot when none precedes it), integrates price over each
    piecewise-constant segment and extends the last known price to end_sec.

    Args:
        history: Price snapshots, oldest first
        start_sec: Interval start (Unix seconds)
        end_sec: Interval end (Unix seconds)
        fallback_price: Returned for an empty history or a degenerate interval

    Returns:
        Weighted average price, or fallback_price if it cannot be computed
    """
    if end_sec <= start_sec or not history:
        return fallback_price

    timestamps = [snapshot.ts for snapshot in history]
    index = max(bisect_right(timestamps, start_sec) - 1, 0)

    price_seconds = 0.0
    prices_used = set()
    cursor = start_sec
    while cursor < end_sec and index < len(history):
        price = history[index].price
        # The last known price stays in effect until end_sec
        next_ts = history[index + 1].ts if index + 1 < len(history) else end_sec
        segment_end = min(max(next_ts, cursor), end_sec)

        if segment_end > cursor:
            price_seconds += price * (segment_end - cursor)
            prices_used.add(price)
            cursor = segment_end
        index += 1

    if len(prices_used) == 1:
        return prices_used.pop()

    weighted = price_seconds / (end_sec - start_sec)
    if not math.isfinite(weighted):
        return fallback_price
    return weighted

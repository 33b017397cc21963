"""
API endpoints for counter samples, prices, ledger statistics and settings.

"""

from api_conversion import convert_keys_to_camel_case, convert_keys_to_snake_case
from api_dataclasses import (
    APIDailyStats,
    APIDetailedBreakdown,
    APIPriceRequest,
    APISampleRequest,
    APIStatisticsEntry,
)
from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger

from core.ledger.exceptions import LedgerStorageError
from core.ledger.ledger_manager import LedgerManager
from core.ledger.time_utils import now_timestamp

router = APIRouter()


def get_ledger_manager() -> LedgerManager:
    """Ledger manager of the running controller."""
    from app import ledger_controller

    return ledger_controller.manager


def _currency(manager: LedgerManager) -> str:
    return manager.price_settings.currency


@router.get("/api/devices")
def list_devices(manager: LedgerManager = Depends(get_ledger_manager)):
    """List devices that have a ledger record."""
    return {"devices": manager.device_ids()}


@router.post("/api/devices/{device_id}/samples")
def post_sample(
    device_id: str,
    sample: dict,
    manager: LedgerManager = Depends(get_ledger_manager),
):
    """Process one cumulative counter sample from camelCase input."""
    try:
        request = APISampleRequest(**sample)
        internal = request.to_internal()
    except (TypeError, ValueError) as e:
        logger.warning(f"Rejected sample for {device_id}: {e}")
        raise HTTPException(status_code=400, detail=f"Invalid sample: {e}") from e

    try:
        outcome = manager.process_sample(
            device_id, internal, current_price=request.currentPrice
        )
        if not outcome.validation.is_valid:
            raise HTTPException(
                status_code=400, detail=f"Invalid sample: {outcome.validation.error}"
            )
        currency = _currency(manager)
        return {
            "deviceId": device_id,
            "reason": outcome.reason.value,
            "state": convert_keys_to_camel_case(outcome.state),
            "flush": convert_keys_to_camel_case(outcome.flush),
            "entries": [
                convert_keys_to_camel_case(APIStatisticsEntry.from_internal(e, currency))
                for e in outcome.entries
            ],
        }

    except LedgerStorageError as e:
        logger.error(f"Error processing sample for {device_id}: {e}")
        raise HTTPException(status_code=503, detail=str(e)) from e


@router.post("/api/devices/{device_id}/prices")
def post_price(
    device_id: str,
    snapshot: dict,
    manager: LedgerManager = Depends(get_ledger_manager),
):
    """Record a price snapshot for a device."""
    try:
        request = APIPriceRequest(**snapshot)
    except TypeError as e:
        raise HTTPException(status_code=400, detail=f"Invalid price snapshot: {e}") from e

    try:
        history = manager.record_price(device_id, request.ts, request.price)
        return {"deviceId": device_id, "priceHistory": convert_keys_to_camel_case(history)}

    except LedgerStorageError as e:
        logger.error(f"Error recording price for {device_id}: {e}")
        raise HTTPException(status_code=503, detail=str(e)) from e


@router.get("/api/devices/{device_id}/prices")
def get_prices(device_id: str, manager: LedgerManager = Depends(get_ledger_manager)):
    """Get the price history of a device."""
    return {
        "deviceId": device_id,
        "priceHistory": convert_keys_to_camel_case(manager.get_price_history(device_id)),
    }


@router.get("/api/devices/{device_id}/accumulator")
def get_accumulator(device_id: str, manager: LedgerManager = Depends(get_ledger_manager)):
    """Get the persisted accumulator state of a device."""
    state = manager.get_accumulator_state(device_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"No accumulator state for {device_id}")
    return convert_keys_to_camel_case(state)


@router.get("/api/devices/{device_id}/entries")
def get_entries(device_id: str, manager: LedgerManager = Depends(get_ledger_manager)):
    """Get the retained statistics entries of a device."""
    currency = _currency(manager)
    entries = manager.get_entries(device_id)
    return {
        "deviceId": device_id,
        "entries": [
            convert_keys_to_camel_case(APIStatisticsEntry.from_internal(e, currency))
            for e in entries
        ],
    }


@router.get("/api/devices/{device_id}/daily-stats")
def get_daily_stats(
    device_id: str,
    include_events: bool = Query(False, alias="includeEvents"),
    manager: LedgerManager = Depends(get_ledger_manager),
):
    """Get daily statistics of a device, oldest day first."""
    currency = _currency(manager)
    try:
        days = manager.get_daily_stats(device_id)
        return {
            "deviceId": device_id,
            "currency": currency,
            "days": [
                convert_keys_to_camel_case(
                    APIDailyStats.from_internal(day, currency, include_events)
                )
                for day in days
            ],
        }

    except Exception as e:
        logger.error(f"Error getting daily stats for {device_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.get("/api/devices/{device_id}/today")
def get_today(device_id: str, manager: LedgerManager = Depends(get_ledger_manager)):
    """Get today's statistics and detailed breakdown of a device."""
    currency = _currency(manager)
    try:
        today = manager.get_today_stats(device_id)
        breakdown = manager.get_detailed_breakdown(device_id, today.date)
        return {
            "deviceId": device_id,
            "today": convert_keys_to_camel_case(
                APIDailyStats.from_internal(today, currency)
            ),
            "breakdown": convert_keys_to_camel_case(
                APIDetailedBreakdown.from_internal(breakdown, currency)
            ),
        }

    except Exception as e:
        logger.error(f"Error getting today's stats for {device_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.get("/api/devices/{device_id}/summary")
def get_summary(device_id: str, manager: LedgerManager = Depends(get_ledger_manager)):
    """Get totals and audit counters over all retained entries."""
    try:
        summary = manager.get_statistics_summary(device_id)
        return {"deviceId": device_id, **convert_keys_to_camel_case(summary)}

    except Exception as e:
        logger.error(f"Error getting summary for {device_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.get("/api/devices/{device_id}/audit-trail")
def get_audit_trail(
    device_id: str,
    start: float | None = Query(None),
    end: float | None = Query(None),
    manager: LedgerManager = Depends(get_ledger_manager),
):
    """Re-validate entries with start <= timestamp < end (defaults to the last 24 hours)."""
    end_time = end if end is not None else now_timestamp()
    start_time = start if start is not None else end_time - 24 * 3600
    if end_time <= start_time:
        raise HTTPException(status_code=400, detail="end must be after start")

    records = manager.get_audit_trail(device_id, start_time, end_time)
    return {
        "deviceId": device_id,
        "start": start_time,
        "end": end_time,
        "records": convert_keys_to_camel_case(records),
    }


@router.post("/api/devices/{device_id}/cleanup")
def cleanup_device(device_id: str, manager: LedgerManager = Depends(get_ledger_manager)):
    """Apply the retention policy to one device now."""
    reports = manager.run_retention_cleanup(device_id)
    return {"deviceId": device_id, "report": convert_keys_to_camel_case(reports[device_id])}


@router.post("/api/cleanup")
def cleanup_all(manager: LedgerManager = Depends(get_ledger_manager)):
    """Apply the retention policy to every device now."""
    reports = manager.run_retention_cleanup()
    return {
        "reports": {
            device_id: convert_keys_to_camel_case(report)
            for device_id, report in reports.items()
        }
    }


@router.post("/api/devices/{device_id}/reset")
def reset_statistics(device_id: str, manager: LedgerManager = Depends(get_ledger_manager)):
    """Drop all statistics entries of a device."""
    removed = manager.reset_statistics(device_id)
    return {"message": "Statistics reset successfully", "entriesRemoved": removed}


@router.get("/api/calculator/audit")
def get_calculator_audit(
    limit: int = Query(20, ge=0, le=500),
    manager: LedgerManager = Depends(get_ledger_manager),
):
    """Get calculator audit statistics and the most recent audit records."""
    return {
        "statistics": convert_keys_to_camel_case(manager.calculator.get_audit_statistics()),
        "memory": convert_keys_to_camel_case(manager.calculator.get_memory_usage_report()),
        "memoryHistory": convert_keys_to_camel_case(manager.calculator.get_memory_history()),
        "recent": convert_keys_to_camel_case(
            manager.calculator.get_audit_trail_limited(limit)
        ),
    }


@router.post("/api/calculator/cleanup")
def force_calculator_cleanup(manager: LedgerManager = Depends(get_ledger_manager)):
    """Shrink the calculator audit trail when it is near capacity."""
    result = manager.calculator.force_memory_cleanup()
    return convert_keys_to_camel_case(result)


@router.get("/api/settings")
def get_settings(manager: LedgerManager = Depends(get_ledger_manager)):
    """Get all ledger settings in camelCase."""
    return convert_keys_to_camel_case(manager.get_settings())


@router.post("/api/settings")
def update_settings(settings: dict, manager: LedgerManager = Depends(get_ledger_manager)):
    """Update ledger settings from camelCase input."""
    try:
        manager.update_settings(convert_keys_to_snake_case(settings))
        return {"message": "Settings updated successfully"}

    except ValueError as e:
        logger.error(f"Error updating settings: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e

"""Shared test fixtures and utilities for ledger unit and integration tests."""

import logging
import os
import sys
import time

import pytest

# Add the project root to Python path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../../.."))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from core.ledger.financial_calculator import FinancialCalculator  # noqa: E402
from core.ledger.ledger_manager import LedgerManager  # noqa: E402
from core.ledger.ledger_store import InMemoryLedgerStore  # noqa: E402
from core.ledger.models import (  # noqa: E402
    EntryAudit,
    EntryType,
    GridCounterSample,
    StatisticsEntry,
)
from core.ledger.statistics_aggregator import StatisticsAggregator  # noqa: E402

# Yesterday 00:00 UTC: recent enough for timestamp validation, always in the past
BASE_TS = (int(time.time()) // 86400 - 1) * 86400


def make_sample(offset_sec, input_raw, output_raw, divisor=10.0):
    """Sample at BASE_TS + offset_sec."""
    return GridCounterSample(
        timestamp_sec=BASE_TS + offset_sec,
        input_raw=input_raw,
        output_raw=output_raw,
        divisor_raw_per_kwh=divisor,
    )


def make_entry(
    timestamp,
    entry_type=EntryType.CHARGING,
    energy=1.0,
    price=0.25,
    duration=60,
    audit=None,
):
    """Statistics entry with the sign of energy set by entry_type."""
    amount = abs(energy) if entry_type is EntryType.CHARGING else -abs(energy)
    return StatisticsEntry(
        timestamp=timestamp,
        type=entry_type,
        energy_amount=amount,
        duration=duration,
        price_at_time=price,
        calculation_audit=audit,
    )


@pytest.fixture
def base_ts():
    """Yesterday 00:00 UTC as Unix seconds."""
    return BASE_TS


@pytest.fixture
def calculator():
    """Fresh FinancialCalculator with default settings."""
    return FinancialCalculator()


@pytest.fixture
def aggregator(calculator):
    """StatisticsAggregator sharing the calculator fixture."""
    return StatisticsAggregator(calculator=calculator)


@pytest.fixture
def manager():
    """LedgerManager on an in-memory store."""
    return LedgerManager(store=InMemoryLedgerStore())


@pytest.fixture
def outlier_entry(base_ts):
    """Discharging entry flagged as a capped outlier."""
    return make_entry(
        base_ts + 7200,
        EntryType.DISCHARGING,
        energy=100.0,
        price=0.40,
        audit=EntryAudit(is_outlier=True, recovery_actions=["Capped outlier value"]),
    )

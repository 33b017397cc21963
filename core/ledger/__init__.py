"""Battery energy ledger package: counter accumulation and financial reconciliation."""

# Define public API - only include what users should directly access
__all__ = [
    "AccumulatorSettings",  # Public settings classes
    "DivisorSettings",
    "FinancialCalculator",
    "FinancialSettings",
    "GridCounterSample",
    "InMemoryLedgerStore",
    "JsonFileLedgerStore",
    "LedgerManager",  # Main facade
    "PriceSettings",
    "StatisticsAggregator",
    "StatisticsSettings",
    "update_accumulator",
]

# Import settings used by other modules
from .settings import (  # noqa: I001
    AccumulatorSettings,
    DivisorSettings,
    FinancialSettings,
    PriceSettings,
    StatisticsSettings,
)

from .models import GridCounterSample
from .grid_counter_accumulator import update_accumulator
from .financial_calculator import FinancialCalculator
from .statistics_aggregator import StatisticsAggregator
from .ledger_store import InMemoryLedgerStore, JsonFileLedgerStore

# Import main facade class (the primary entry point to the system)
from .ledger_manager import LedgerManager

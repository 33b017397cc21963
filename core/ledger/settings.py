"""Core configuration values and types for the energy ledger using dataclasses."""

from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any

from .exceptions import SystemConfigurationError

# Accumulator defaults
FLUSH_INTERVAL_MINUTES = 60  # 15 gives faster reconciliation
MIN_DELTA_TRIGGER_RAW = None  # Disabled unless configured

# Financial defaults
CURRENCY_DECIMALS = 2
ENERGY_PRICE_DECIMALS = 4
ENERGY_AMOUNT_DECIMALS = 3
MAX_ENERGY_PRICE = 5.00  # currency/kWh, above this only warns
MAX_ENERGY_AMOUNT = 1000.0  # kWh per event
MIN_ENERGY_AMOUNT = 0.00001  # kWh, below this only warns
MAX_PROFIT_MAGNITUDE = 10000.0  # currency per entry
MAX_POWER_W = 50000.0  # W, power-integration mode
AUDIT_TRAIL_CAPACITY = 500
AUDIT_TRAIL_RETAIN = 450

# Statistics defaults
RETENTION_DAYS = 30
MAX_STATISTICS_ENTRIES = 10000
MAX_MEMORY_USAGE_MB = 50.0
BYTES_PER_ENTRY = 1200  # ~1.2 KB per entry estimate
CLEANUP_THRESHOLD = 0.8
OUTLIER_THRESHOLD = 2.5
OUTLIER_HISTORY_SIZE = 10

# Price defaults
FALLBACK_PRICE = 0.30  # currency/kWh
PRICE_HISTORY_HOURS = 72
PRICE_DEDUP_SECONDS = 3600
MAX_PRICE_SNAPSHOTS = 2000
CURRENCY = "EUR"

# Divisor fallback ladder
DIVISOR_CANDIDATES = (10.0, 100.0, 1000.0)


class _UpdatableSettings:
    """Shared update helper for settings dataclasses."""

    def updated(self, **kwargs: Any):
        """Validated copy with the given values applied. Unknown keys are ignored.

        Raises:
            SystemConfigurationError: If the resulting values are invalid
        """
        settable = {f.name for f in fields(self) if f.init}
        return replace(self, **{k: v for k, v in kwargs.items() if k in settable})

    def update(self, **kwargs: Any) -> None:
        """Update settings from dict. Nothing changes when validation fails."""
        candidate = self.updated(**kwargs)
        for f in fields(self):
            setattr(self, f.name, getattr(candidate, f.name))

    def validate(self) -> None:
        """Validate settings values. Overridden where there is something to check."""

    def asdict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AccumulatorSettings(_UpdatableSettings):
    """Flush policy for the grid counter accumulator."""

    flush_interval_minutes: float = FLUSH_INTERVAL_MINUTES
    min_delta_trigger_raw: float | None = MIN_DELTA_TRIGGER_RAW

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.flush_interval_minutes <= 0:
            raise SystemConfigurationError(
                component="accumulator",
                message=f"flush_interval_minutes must be positive, got {self.flush_interval_minutes}",
            )
        if self.min_delta_trigger_raw is not None and self.min_delta_trigger_raw <= 0:
            raise SystemConfigurationError(
                component="accumulator",
                message=f"min_delta_trigger_raw must be positive, got {self.min_delta_trigger_raw}",
            )

    def from_config(self, config: dict) -> "AccumulatorSettings":
        """Read the 'accumulator' section of an options dict."""
        if "accumulator" in config:
            section = config["accumulator"]
            self.flush_interval_minutes = section.get(
                "flush_interval_minutes", FLUSH_INTERVAL_MINUTES
            )
            self.min_delta_trigger_raw = section.get(
                "min_delta_trigger_raw", MIN_DELTA_TRIGGER_RAW
            )
            self.validate()
        return self


@dataclass
class FinancialSettings(_UpdatableSettings):
    """Precision and plausibility bounds for financial calculations."""

    currency_decimals: int = CURRENCY_DECIMALS
    energy_price_decimals: int = ENERGY_PRICE_DECIMALS
    energy_amount_decimals: int = ENERGY_AMOUNT_DECIMALS
    max_energy_price: float = MAX_ENERGY_PRICE
    max_energy_amount: float = MAX_ENERGY_AMOUNT
    min_energy_amount: float = MIN_ENERGY_AMOUNT
    max_profit_magnitude: float = MAX_PROFIT_MAGNITUDE
    max_power_w: float = MAX_POWER_W
    audit_trail_capacity: int = AUDIT_TRAIL_CAPACITY
    audit_trail_retain: int = AUDIT_TRAIL_RETAIN

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if not 0 < self.audit_trail_retain <= self.audit_trail_capacity:
            raise SystemConfigurationError(
                component="financial",
                message=(
                    f"audit_trail_retain ({self.audit_trail_retain}) must be between 1 "
                    f"and audit_trail_capacity ({self.audit_trail_capacity})"
                ),
            )
        if self.max_energy_amount <= self.min_energy_amount:
            raise SystemConfigurationError(
                component="financial",
                message="max_energy_amount must be larger than min_energy_amount",
            )

    def from_config(self, config: dict) -> "FinancialSettings":
        """Read the 'financial' section of an options dict."""
        if "financial" in config:
            section = config["financial"]
            self.max_energy_price = section.get("max_energy_price", MAX_ENERGY_PRICE)
            self.max_energy_amount = section.get("max_energy_amount", MAX_ENERGY_AMOUNT)
            self.max_profit_magnitude = section.get(
                "max_profit_magnitude", MAX_PROFIT_MAGNITUDE
            )
            self.currency_decimals = section.get("currency_decimals", CURRENCY_DECIMALS)
            self.validate()
        return self


@dataclass
class StatisticsSettings(_UpdatableSettings):
    """Retention and memory bounds for the statistics entry list."""

    retention_days: int = RETENTION_DAYS
    max_entries: int = MAX_STATISTICS_ENTRIES
    max_memory_usage_mb: float = MAX_MEMORY_USAGE_MB
    bytes_per_entry: int = BYTES_PER_ENTRY
    enable_proactive_cleanup: bool = True
    cleanup_threshold: float = CLEANUP_THRESHOLD
    outlier_threshold: float = OUTLIER_THRESHOLD
    outlier_history_size: int = OUTLIER_HISTORY_SIZE
    transparency: bool = False
    max_memory_bytes: float = field(init=False)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.retention_days <= 0:
            raise SystemConfigurationError(
                component="statistics",
                message=f"retention_days must be positive, got {self.retention_days}",
            )
        if self.max_entries <= 0:
            raise SystemConfigurationError(
                component="statistics",
                message=f"max_entries must be positive, got {self.max_entries}",
            )
        self.max_memory_bytes = self.max_memory_usage_mb * 1024 * 1024

    def from_config(self, config: dict) -> "StatisticsSettings":
        """Read the 'statistics' section of an options dict."""
        if "statistics" in config:
            section = config["statistics"]
            self.retention_days = section.get("retention_days", RETENTION_DAYS)
            self.max_entries = section.get("max_entries", MAX_STATISTICS_ENTRIES)
            self.max_memory_usage_mb = section.get(
                "max_memory_usage_mb", MAX_MEMORY_USAGE_MB
            )
            self.transparency = section.get("transparency", False)
            self.validate()
        return self


@dataclass
class PriceSettings(_UpdatableSettings):
    """Price history bounds and the fallback price."""

    fallback_price: float = FALLBACK_PRICE
    currency: str = CURRENCY
    history_hours: int = PRICE_HISTORY_HOURS
    dedup_seconds: int = PRICE_DEDUP_SECONDS
    max_snapshots: int = MAX_PRICE_SNAPSHOTS

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.fallback_price < 0:
            raise SystemConfigurationError(
                component="price",
                message=f"fallback_price cannot be negative, got {self.fallback_price}",
            )

    def from_config(self, config: dict) -> "PriceSettings":
        """Read the 'price' section of an options dict."""
        if "price" in config:
            section = config["price"]
            self.fallback_price = section.get("fallback_price", FALLBACK_PRICE)
            self.currency = section.get("currency", CURRENCY)
            self.history_hours = section.get("history_hours", PRICE_HISTORY_HOURS)
            self.validate()
        return self


@dataclass
class DivisorSettings(_UpdatableSettings):
    """Plausibility ladder for the raw-to-kWh divisor.

    The ladder is disabled unless a ceiling is available, either directly via
    ``plausibility_ceiling_kwh`` or derived as twice the battery capacity.
    """

    candidates: tuple[float, ...] = DIVISOR_CANDIDATES
    plausibility_ceiling_kwh: float | None = None
    battery_capacity_kwh: float | None = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        self.candidates = tuple(float(c) for c in self.candidates)
        if any(c <= 0 for c in self.candidates):
            raise SystemConfigurationError(
                component="divisor",
                message=f"Divisor candidates must be positive, got {self.candidates}",
            )
        for name in ("plausibility_ceiling_kwh", "battery_capacity_kwh"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise SystemConfigurationError(
                    component="divisor", message=f"{name} must be positive, got {value}"
                )

    @property
    def effective_ceiling_kwh(self) -> float | None:
        """Ceiling used by the ladder, or None when the ladder is off."""
        if self.plausibility_ceiling_kwh is not None:
            return self.plausibility_ceiling_kwh
        if self.battery_capacity_kwh is not None:
            return self.battery_capacity_kwh * 2
        return None

    @property
    def enabled(self) -> bool:
        return self.effective_ceiling_kwh is not None

    def from_config(self, config: dict) -> "DivisorSettings":
        """Read the 'divisor' section of an options dict."""
        if "divisor" in config:
            section = config["divisor"]
            self.candidates = section.get("candidates", DIVISOR_CANDIDATES)
            self.plausibility_ceiling_kwh = section.get("plausibility_ceiling_kwh")
            self.battery_capacity_kwh = section.get("battery_capacity_kwh")
            self.validate()
        return self

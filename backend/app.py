import json
import os
from contextlib import asynccontextmanager

import log_config  # noqa: F401
import yaml

# Import endpoints router
from api import router as endpoints_router
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

# Import ledger modules
from core.ledger.exceptions import SystemConfigurationError
from core.ledger.ledger_manager import LedgerManager
from core.ledger.ledger_store import InMemoryLedgerStore, JsonFileLedgerStore
from core.ledger.settings import (
    AccumulatorSettings,
    DivisorSettings,
    FinancialSettings,
    PriceSettings,
    StatisticsSettings,
)

# Get ingress prefix from environment variable
INGRESS_PREFIX = os.environ.get("INGRESS_PREFIX", "")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan manager for FastAPI app."""
    # Startup
    routes = []
    for route in app.routes:
        path = getattr(route, "path", getattr(route, "mount_path", "Unknown path"))
        methods = getattr(route, "methods", None)
        if methods is not None:
            routes.append(f"{path} - {methods}")
        else:
            routes.append(f"{path} - Mounted route or no methods")
    logger.info(f"Registered routes: {routes}")

    yield

    # Shutdown
    ledger_controller.stop()


# Create FastAPI app with correct root_path
app = FastAPI(root_path=INGRESS_PREFIX, lifespan=lifespan)


# Add global exception handler to prevent server restarts
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    import traceback

    from fastapi.responses import JSONResponse

    # Get the full stack trace
    tb_str = traceback.format_exception(type(exc), exc, exc.__traceback__)
    error_msg = "".join(tb_str)

    # Log the full error details
    logger.error(f"Unhandled exception: {exc!s}")
    logger.error(f"Request path: {request.url.path}")
    logger.error(f"Stack trace:\n{error_msg}")

    # Return a 500 response but keep the server running
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": str(type(exc).__name__),
            "message": "The server encountered an internal error but is still running.",
        },
    )


logger.info(f"Ingress prefix: {INGRESS_PREFIX}")

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include the router from api.py
app.include_router(endpoints_router)


class LedgerController:
    def __init__(self):
        """Initialize the ledger controller."""
        # Load environment variables
        load_dotenv(os.environ.get("LEDGER_ENV_FILE", "/data/options.env"))

        options = self._load_options()
        if not options:
            logger.warning("No configuration options found, using defaults")
            options = {}

        self.manager = LedgerManager(
            store=self._init_store(),
            **self._build_settings(options),
        )

        # Create scheduler with increased misfire grace time to avoid unnecessary warnings
        self.scheduler = BackgroundScheduler(
            {
                "apscheduler.job_defaults": {
                    "misfire_grace_time": 30  # Allow 30 seconds of misfire before warning
                },
            },
            timezone="UTC",
        )

        logger.info("Ledger controller initialized")

    def _init_store(self):
        """JSON file store under DATA_DIR, or an in-memory store when unset."""
        data_dir = os.environ.get("DATA_DIR")
        if data_dir:
            return JsonFileLedgerStore(data_dir)

        logger.warning("DATA_DIR not set, ledger records are kept in memory only")
        return InMemoryLedgerStore()

    def _load_options(self):
        """Load options from the add-on options file or config.yaml."""

        options_json = "/data/options.json"
        config_yaml = os.environ.get("CONFIG_PATH", "config.yaml")

        # First try the standard options.json (production)
        if os.path.exists(options_json):
            try:
                with open(options_json) as f:
                    options = json.load(f)
                    logger.info(f"Loaded options from {options_json}")
                    return options
            except (OSError, ValueError) as e:
                logger.error(f"Error loading options from {options_json}: {e!s}")

        # If not available, try to load from config.yaml directly (development)
        if os.path.exists(config_yaml):
            try:
                with open(config_yaml) as f:
                    config = yaml.safe_load(f) or {}

                # Extract options section if it exists
                if "options" in config:
                    logger.info(f"Loaded options from {config_yaml} (options section)")
                    return config["options"]

                logger.warning(
                    f"No 'options' section found in {config_yaml}, using entire file"
                )
                return config
            except (OSError, yaml.YAMLError) as e:
                logger.error(f"Error loading from {config_yaml}: {e!s}")

        return None

    def _build_settings(self, options):
        """Create settings objects from the options dictionary.

        Args:
            options: Dictionary with optional accumulator, financial,
                statistics, price and divisor sections
        """
        try:
            logger.debug(f"Applying settings: {json.dumps(options, indent=2)}")
            settings = {
                "accumulator_settings": AccumulatorSettings().from_config(options),
                "financial_settings": FinancialSettings().from_config(options),
                "statistics_settings": StatisticsSettings().from_config(options),
                "price_settings": PriceSettings().from_config(options),
                "divisor_settings": DivisorSettings().from_config(options),
            }
            logger.info("All settings applied successfully")
            return settings

        except (SystemConfigurationError, TypeError, ValueError) as e:
            logger.error(f"CRITICAL: Failed to apply settings from config: {e}")
            raise RuntimeError(
                f"Settings application failed - ledger cannot start safely. "
                f"Check config.yaml for invalid settings. Error: {e}"
            ) from e

    def _init_scheduler_jobs(self):
        """Configure scheduler jobs."""

        # Daily retention cleanup (00:05 UTC)
        self.scheduler.add_job(
            self.manager.run_retention_cleanup,
            CronTrigger(hour=0, minute=5, timezone="UTC"),
            misfire_grace_time=300,
        )

        self.scheduler.start()

    def start(self):
        """Start the scheduler."""
        self._init_scheduler_jobs()
        logger.info("Scheduler started successfully")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")


# Global ledger controller instance
ledger_controller = LedgerController()
ledger_controller.start()


@app.get("/")
async def root_index():
    return {"service": "bess-ledger", "devices": ledger_controller.manager.device_ids()}


# All API endpoints are found in api.py and are imported via the router
# The endpoints router is included in the app instance at the top of this file

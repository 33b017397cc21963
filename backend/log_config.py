import logging
import os
import sys
from pathlib import Path

from loguru import logger

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
# Optional rotating log file, e.g. /data/ledger.log, for auditing flushed entries
LOG_FILE = os.environ.get("LOG_FILE")

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <5}</level> | "
    "<cyan>{extra[module_name]}</cyan> - {message}"
)

# Remove default handler
logger.remove()


def add_module_name(record):
    """Ensure every record has module_name in extra."""
    if "module_name" not in record["extra"]:
        record["extra"]["module_name"] = f"{record['name']}:{record['line']}"
    return True


logger.add(
    sys.stderr,
    format=LOG_FORMAT,
    level=LOG_LEVEL,
    colorize=True,
    filter=add_module_name,
)

if LOG_FILE:
    logger.add(
        LOG_FILE,
        format=LOG_FORMAT,
        level=LOG_LEVEL,
        colorize=False,
        filter=add_module_name,
        rotation="10 MB",
        retention=5,
        enqueue=True,
    )


# Intercept standard logging
class InterceptHandler(logging.Handler):
    def emit(self, record):
        # Get corresponding Loguru level if it exists
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # core.ledger modules log through the standard library with dotted names
        if record.name == "root":
            module_name = record.module
        elif "." in record.name:
            module_name = record.name
        else:
            module_name = Path(record.pathname).stem

        logger.bind(module_name=f"{module_name}:{record.lineno}").opt(
            exception=record.exc_info
        ).log(level, record.getMessage())


# Configure standard logging to use Loguru
logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

# Set APScheduler's executors to ERROR level to suppress misfire warnings
logging.getLogger("apscheduler.executors.default").setLevel(logging.ERROR)
# Set APScheduler's scheduler to WARNING level to suppress job addition messages
logging.getLogger("apscheduler.scheduler").setLevel(logging.WARNING)

# Route every already-created logger through the root handler
for name in logging.root.manager.loggerDict.keys():
    if name not in ["apscheduler.executors.default", "apscheduler.scheduler"]:
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True

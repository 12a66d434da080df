"""
Logging utilities.

WHAT: Centralized logging configuration
WHY: Ledger, negotiation, QR and rate-limit events interleave across request
     threads and the maintenance timer; each line must say which component wrote it
HOW: Python logging with file and console handlers; a filter tags records
     with a short component name derived from the logger name
"""

import logging
import sys
from pathlib import Path

from ..core.config import settings

# Longest prefix wins
COMPONENTS = {
    "bazaar.services.resource_ledger": "ledger",
    "bazaar.services.negotiation_service": "negotiation",
    "bazaar.services.qr_session_service": "qr",
    "bazaar.services.rate_governor": "rate",
    "bazaar.services.maintenance": "maintenance",
    "bazaar.api": "api",
    "bazaar.middleware": "api",
    "bazaar.core": "core",
}


def component_for(logger_name: str) -> str:
    """Short component tag for a logger name; "app" when nothing matches."""
    best = ""
    for prefix in COMPONENTS:
        if (logger_name == prefix or logger_name.startswith(prefix + ".")) and len(prefix) > len(best):
            best = prefix
    return COMPONENTS.get(best, "app")


class ComponentFilter(logging.Filter):
    """Adds ``record.component`` so formatters can print it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.component = component_for(record.name)
        return True


def setup_logging():
    """
    Configure application logging.

    WHAT: Set up root logger with file and console handlers
    WHY: Ensure logs are captured to file and visible in console
    HOW: Create handlers with formatters and the component filter, set levels from config
    """
    log_file = Path(settings.LOG_FILE)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root_logger.handlers.clear()

    component_filter = ComponentFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.addFilter(component_filter)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - [%(component)s] %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root_logger.addHandler(console_handler)

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.addFilter(component_filter)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - [%(component)s] %(name)s - %(levelname)s - %(threadName)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root_logger.addHandler(file_handler)

    # SQL echo only in debug mode
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DEBUG else logging.WARNING
    )

    root_logger.info(f"Logging initialized (level={settings.LOG_LEVEL}, file={log_file})")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)

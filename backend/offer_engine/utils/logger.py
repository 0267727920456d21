"""
Logging utilities.

WHAT: Centralized logging configuration
WHY: Offer transitions, recovered business errors and notification failures land in one place
HOW: Python logging with console and file handlers; noisy library loggers capped
"""

import logging
import sys
from pathlib import Path

from ..core.config import settings

CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(pathname)s:%(lineno)d - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Library loggers that flood INFO with per-request or per-statement lines
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def setup_logging():
    """
    Configure application logging.

    WHAT: Set up root logger with console and file handlers
    WHY: Engine transitions go to the file at DEBUG, operators see INFO on the console
    HOW: Replace existing root handlers, level from LOG_LEVEL, library loggers at WARNING
    """
    log_file = Path(settings.LOG_FILE)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(file_handler)

    # SQL echo is controlled by DEBUG on the engine, not by LOG_LEVEL
    if not settings.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized (level={settings.LOG_LEVEL}, file={log_file})")


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a module (pass __name__)."""
    return logging.getLogger(name)

"""Logging configuration for the billing API server and cycle runs.

Writes to stdout and to a log file. The level comes from the LOG_LEVEL
setting (env var or .env); INFO by default, DEBUG shows per-member
progress of billing cycles and every ledger append.
"""

import logging
import sys
from pathlib import Path

from society_billing.config import get_settings

LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

LOG_FORMAT = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_log_level(level_name: str | None = None) -> int:
    """Resolve a level name to a logging constant.

    Args:
        level_name: Level name; falls back to the configured LOG_LEVEL

    Returns:
        Logging level constant (unknown names resolve to INFO)
    """
    name = (level_name or get_settings().log_level).upper()
    return LOG_LEVEL_MAP.get(name, logging.INFO)


def setup_server_logging(log_file: str | None = None, level_name: str | None = None) -> None:
    """
    Configure the root logger with stdout and file handlers.

    Args:
        log_file: Path to log file (default: settings.log_file)
        level_name: Optional level override (default: settings.log_level)
    """
    log_path = Path(log_file or get_settings().log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    log_level = get_log_level(level_name)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove any existing handlers to avoid duplicates
    root_logger.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(log_level)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # SQL echo is controlled by DATABASE_ECHO, keep the engine logger quiet otherwise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


__all__ = ["get_log_level", "setup_server_logging"]

"""
Logging setup shared by the orchestrator and its worker processes.

Every worker is a separate OS process appending to the same log files, so
each record is stamped with the process id. Component loggers are attached
to package names (``scripts.coordination``, ``scripts.monitor``) so module
level ``logging.getLogger(__name__)`` calls inherit their handlers.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from config.settings import Config


# Used when config.settings cannot be imported (e.g. a missing .env value)
class _FallbackConfig:
    LOG_LEVEL = "INFO"
    LOG_MAX_BYTES = 5 * 1024 * 1024
    LOG_BACKUP_COUNT = 3
    QUEUE_LOG_FILE = "logs/download_queue.log"
    BOUNDARIES_LOG_FILE = "logs/boundaries.log"
    GAP_MONITOR_LOG_FILE = "logs/gap_monitor.log"
    ORCHESTRATOR_LOG_FILE = "logs/orchestrator.log"


config: "Config | _FallbackConfig" = _FallbackConfig()

try:
    from config.settings import config as imported_config

    config = imported_config
except Exception:
    pass

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(process)d] %(message)s"

QUEUE_LOGGER = "scripts.coordination"
BOUNDARIES_LOGGER = "boundaries"
GAP_MONITOR_LOGGER = "scripts.monitor"
ORCHESTRATOR_LOGGER = "orchestrator"


def _default_log_file(logger_name: str | None) -> str:
    known_files = {
        QUEUE_LOGGER: config.QUEUE_LOG_FILE,
        BOUNDARIES_LOGGER: config.BOUNDARIES_LOG_FILE,
        GAP_MONITOR_LOGGER: config.GAP_MONITOR_LOG_FILE,
        ORCHESTRATOR_LOGGER: config.ORCHESTRATOR_LOG_FILE,
    }
    return known_files.get(logger_name or "", f"logs/{logger_name or 'default'}.log")


def setup_logging(
    log_level: str | None = None,
    log_file: str | None = None,
    logger_name: str | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
) -> logging.Logger:
    """
    Send a logger's records to stdout and to a size-rotated file.

    Handlers are replaced, not added, so a forked worker that calls this
    again does not print each line twice. If the file cannot be opened the
    logger keeps the console handler only.

    Args:
        log_level (str, optional): Level name, config.LOG_LEVEL when None
        log_file (str, optional): Target file, the component file registered
                                  for logger_name when None
        logger_name (str, optional): Logger to configure, root when None
        max_bytes (int, optional): Rotation size, config.LOG_MAX_BYTES when None
        backup_count (int, optional): Rotated files kept, config.LOG_BACKUP_COUNT when None

    Returns:
        logging.Logger: The configured logger

    Example:
        >>> logger = setup_logging("DEBUG", "logs/reaper.log", "reaper")
        >>> logger.info("Reaper started")
    """
    log_level = log_level or config.LOG_LEVEL
    max_bytes = max_bytes if max_bytes is not None else config.LOG_MAX_BYTES
    backup_count = backup_count if backup_count is not None else config.LOG_BACKUP_COUNT
    log_file = log_file or _default_log_file(logger_name)

    logger = logging.getLogger(logger_name) if logger_name else logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    try:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        logger.debug(f"Logging to {log_file} at {log_level}")
    except OSError as e:
        logger.warning(f"Cannot write log file {log_file}: {e}; console only")

    return logger


def setup_queue_logging(log_level: str | None = None) -> logging.Logger:
    """Ticket queue, slot semaphore and reaper records, into the queue log."""
    return setup_logging(log_level=log_level, logger_name=QUEUE_LOGGER)


def setup_boundaries_logging(log_level: str | None = None) -> logging.Logger:
    """Boundary download and import records."""
    return setup_logging(log_level=log_level, logger_name=BOUNDARIES_LOGGER)


def setup_gap_logging(log_level: str | None = None) -> logging.Logger:
    """Gap detection and recovery records, into the gap monitor log."""
    return setup_logging(log_level=log_level, logger_name=GAP_MONITOR_LOGGER)


def setup_orchestrator_logging(log_level: str | None = None) -> logging.Logger:
    """Batch, gap and queue command summaries of the orchestrator."""
    return setup_logging(log_level=log_level, logger_name=ORCHESTRATOR_LOGGER)

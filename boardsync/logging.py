"""
Board Sync Logging

Everything goes under the ``boardsync`` logger: the full record to a rotating
file in the data directory, and a short form on stderr. The interactive table
shares the terminal with the console handler, so it only shows warnings; the
relay has no prompt and logs room traffic to the console.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from boardsync.config import BoardSyncConfig

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3


def _level(name: str, default: int = logging.INFO) -> int:
    return getattr(logging, name.upper(), default)


def setup_logging(
    log_file: Path | None = None,
    level: str = "INFO",
    log_to_file: bool = True,
    console_level: str = "WARNING",
) -> logging.Logger:
    """
    Configure logging for boardsync.

    Args:
        log_file: Path to log file. If None, file logging disabled.
        level: Level of the boardsync logger (DEBUG, INFO, WARNING, ...)
        log_to_file: Whether to write logs to file
        console_level: Lowest level echoed to stderr

    Returns:
        The boardsync logger
    """
    logger = logging.getLogger("boardsync")
    logger.setLevel(_level(level))
    logger.handlers.clear()

    if log_to_file and log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(_level(console_level, logging.WARNING))
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    logger.propagate = False

    # websockets logs every frame at DEBUG; keep only its problems unless debugging
    ws_logger = logging.getLogger("websockets")
    ws_logger.setLevel(logging.DEBUG if logger.level <= logging.DEBUG else logging.WARNING)
    ws_logger.handlers = list(logger.handlers)
    ws_logger.propagate = False

    return logger


def setup_from_config(config: "BoardSyncConfig", console_level: str = "WARNING") -> logging.Logger:
    """Configure logging from the ``log_*`` settings of a BoardSyncConfig."""
    return setup_logging(
        log_file=config.log_file if config.log_to_file else None,
        level=config.log_level,
        log_to_file=config.log_to_file,
        console_level=console_level,
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module.

    Args:
        name: Short module name (e.g. "sync.engine")

    Returns:
        Logger instance
    """
    return logging.getLogger(f"boardsync.{name}")

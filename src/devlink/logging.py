"""Logging configuration for devlink.

Service messages go to the "devlink" logger. HTTP request lines from
aiohttp's access logger are written through the same handlers so a single
log file covers both.
"""

import logging
from pathlib import Path

from devlink.config import Config

LOGGER_NAME = "devlink"
ACCESS_LOGGER_NAME = "aiohttp.access"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_logger: logging.Logger | None = None


def _level(config: Config) -> int:
    return getattr(logging, config.log_level.upper(), logging.INFO)


def _build_handlers(config: Config) -> list[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: list[logging.Handler] = []

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(config: Config) -> logging.Logger:
    """Set up service and access logging.

    Handlers are installed once. Calling again with a different
    log_level only changes the level.

    Args:
        config: Configuration object with log settings.

    Returns:
        The "devlink" logger.
    """
    global _logger

    if _logger is not None:
        _logger.setLevel(_level(config))
        return _logger

    handlers = _build_handlers(config)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_level(config))
    logger.handlers.clear()
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = False

    # Access lines are INFO; they are kept regardless of the service level
    access = logging.getLogger(ACCESS_LOGGER_NAME)
    access.setLevel(logging.INFO)
    access.handlers.clear()
    for handler in handlers:
        access.addHandler(handler)
    access.propagate = False

    _logger = logger
    return logger


def reset_logging() -> None:
    """Reset logging state. Used for testing."""
    global _logger
    if _logger is not None:
        for handler in _logger.handlers:
            handler.close()
        _logger.handlers.clear()
        logging.getLogger(ACCESS_LOGGER_NAME).handlers.clear()
        _logger = None

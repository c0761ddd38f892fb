"""
Logging setup for the dispatch core.

Handlers are attached to the package logger rather than the root logger so a
host application embedding the core keeps control of its own logging.
"""

import logging
import sys
from typing import Optional, TextIO

from .config import AppConfig

PACKAGE_LOGGER = 'recoverylm'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Request dumps from these drown out the turn logs below WARNING
_NOISY_LOGGERS = ('botocore', 'boto3', 'urllib3')


def _resolve_level(config: Optional[AppConfig]) -> int:
    if config is None:
        from .config import config as default_config
        config = default_config
    return getattr(logging, config.log_level.upper(), logging.INFO)


def setup_logging(config: Optional[AppConfig] = None, stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Configure the package logger.

    Safe to call more than once; the stream handler is only attached the
    first time.

    Args:
        config: AppConfig instance, uses default if None
        stream: Output stream (optional, defaults to stdout)

    Returns:
        The package logger
    """
    level = _resolve_level(config)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    if not any(handler.get_name() == PACKAGE_LOGGER for handler in package_logger.handlers):
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.set_name(PACKAGE_LOGGER)
        package_logger.addHandler(handler)
    package_logger.propagate = False

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return package_logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger.

    Modules inside the package inherit the level and handler of the package
    logger configured by setup_logging.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)

"""Logging configuration for tallycache."""

import logging
from typing import Optional

from .config import LoggingConfig

PACKAGE_LOGGER = "tallycache"


def configure_logging(settings: Optional[LoggingConfig] = None, verbose: bool = False) -> logging.Logger:
    """Attach a stderr handler to the package logger.

    Args:
        settings: Logging section of the config; defaults are used when None
        verbose: Force DEBUG regardless of the configured level

    Returns:
        The package logger
    """
    settings = settings or LoggingConfig()
    level = logging.DEBUG if verbose else getattr(logging, settings.level, logging.INFO)

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)

    # Reconfiguring replaces our handler instead of stacking another one
    for handler in list(logger.handlers):
        if getattr(handler, "_tallycache", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(settings.format))
    handler._tallycache = True
    logger.addHandler(handler)
    logger.propagate = False
    return logger

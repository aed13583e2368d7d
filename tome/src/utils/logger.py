"""
Tome - Logging
===============
Logger factory shared by every Tome module.

Verbosity follows ``settings.ENV``:
  • ``"dev"``  → DEBUG
  • ``"prod"`` → WARNING

Usage:
    from tome.src.utils.logger import get_logger
    logger = get_logger(__name__)
"""

import logging
import sys

from tome.config.settings import settings

_ENV_LEVEL_MAP = {
    "dev": logging.DEBUG,
    "prod": logging.WARNING,
}
_DEFAULT_LEVEL = _ENV_LEVEL_MAP.get(settings.ENV, logging.INFO)
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Return a named logger writing to stdout with the Tome format.

    Args:
        name:  Usually ``__name__``.
        level: Explicit level; defaults to the ``ENV``-derived level.
    """
    resolved_level = level if level is not None else _DEFAULT_LEVEL
    logger = logging.getLogger(name)

    # Handlers are attached once per logger name
    if not logger.handlers:
        logger.setLevel(resolved_level)

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(resolved_level)
        handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(handler)

        logger.propagate = False

    return logger

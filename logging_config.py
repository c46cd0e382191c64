"""Logging setup.

Modules log through ``from loguru import logger``; this only decides where
the records go.
"""

import sys

from loguru import logger

HUMAN_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - {message}"
)


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    """Replace loguru's default sink with a single stderr sink."""
    logger.remove()
    if json:
        logger.add(sys.stderr, level=level.upper(), serialize=True)
    else:
        logger.add(sys.stderr, level=level.upper(), format=HUMAN_FORMAT)

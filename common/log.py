"""Logging setup"""

import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>.<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logger(level: str = "INFO") -> None:
    """Replace loguru's default sink with a single stderr sink at `level`."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT, colorize=True, enqueue=False)

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)

_LEVELS = {0: "INFO", 1: "DEBUG"}


def setup_logger(verbosity: int = 0, log_file: Optional[Path] = None):
    """Configure loguru sinks for a run.

    ``verbosity`` follows the usual ``-v`` counting: 0 is INFO, 1 is DEBUG and
    anything above is TRACE.
    """
    level = _LEVELS.get(verbosity, "TRACE")
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT, enqueue=True)
    if log_file:
        logger.add(
            str(log_file),
            level=level,
            format=LOG_FORMAT,
            rotation="50 MB",
            retention=5,
            enqueue=True,
        )
    return logger

import logging
import sys
from typing import Optional

from loguru import logger

_QUIET_LOGGERS = ("httpx", "httpcore", "watchfiles", "aiosqlite")


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Install the stderr sink (and an optional rotating file sink)."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <7} | {name}:{line} | {message} {extra}",
    )
    if log_file:
        logger.add(log_file, level=level.upper(), rotation="10 MB", retention=5, enqueue=True)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

"""
Loguru sink configuration shared by services and maintenance scripts
"""
import sys
from typing import Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Replace loguru's default sink with the project sinks

    Args:
        level: Minimum level for every sink
        log_file: Optional path of a rotating file sink
    """
    logger.remove()
    logger.add(sys.stdout, format=LOG_FORMAT, level=level)

    if log_file:
        logger.add(
            log_file,
            rotation="500 MB",
            retention="10 days",
            level=level
        )

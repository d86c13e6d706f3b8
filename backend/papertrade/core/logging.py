import sys
from typing import Optional

from loguru import logger

from papertrade.core.config import LoggingSettings


def setup_logging(config: Optional[LoggingSettings] = None) -> None:
    config = config or LoggingSettings()
    logger.remove()

    # Console Handler
    logger.add(
        sys.stderr,
        format=config.format,
        level=config.level,
        colorize=True,
    )

    if not config.file_enabled:
        logger.info("Logging initialized (console only)")
        return

    # File Handler (JSON for structured logging)
    logger.add(
        config.file_path,
        rotation=config.file_rotation,
        retention=config.file_retention,
        compression="zip",
        serialize=True,
        level=config.level,
    )

    # Error File Handler
    logger.add(
        config.error_file_path,
        rotation=config.file_rotation,
        retention=config.file_retention,
        level="ERROR",
        backtrace=True,
        diagnose=True,
    )

    logger.info("Logging initialized")

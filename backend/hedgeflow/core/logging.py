import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from hedgeflow.core.config import LoggingSettings, settings


def setup_logging(config: Optional[LoggingSettings] = None) -> None:
    config = config or settings.logging
    logger.remove()

    # Console Handler
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=config.level,
        colorize=True,
    )

    log_dir = Path(config.log_dir)

    # File Handler (JSON for structured logging)
    if config.json_logs:
        logger.add(
            log_dir / "hedgeflow.json",
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            serialize=True,
            level=config.level,
        )

    # Error File Handler
    logger.add(
        log_dir / "error.log",
        rotation=config.rotation,
        retention=config.retention,
        level="ERROR",
        backtrace=True,
        diagnose=False,
    )

    logger.info(f"Logging initialized at {config.level}")

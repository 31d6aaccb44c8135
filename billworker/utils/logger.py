"""
Logging configuration using Loguru.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from billworker.config import Config


def setup_logger(config: Config, debug: bool = False, run_log: Optional[Path] = None):
    """
    Configure the logger with console, rotating file and per-run output.

    Args:
        config: Application configuration
        debug: Force DEBUG on the console
        run_log: Plain log file for this run (tailed by the dashboard)
    """
    # Remove default handler
    logger.remove()

    log_config = config.logging
    level = "DEBUG" if debug or config.app.debug else config.app.log_level

    # Add console handler with colors
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{message}</cyan>",
        level=level,
        colorize=True
    )

    # Add file handler with rotation
    log_dir = Path(log_config.directory)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / log_config.file_name.replace("{date}", "{time:YYYY-MM-DD}")
    logger.add(
        str(log_file),
        format=log_config.format,
        level="DEBUG",
        rotation=log_config.rotation,
        retention=log_config.retention,
        compression=log_config.compression
    )

    if run_log is not None:
        run_log.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(run_log),
            format="[{time:YYYY-MM-DDTHH:mm:ss.SSS!UTC}Z] {message}",
            level="INFO",
            mode="w"
        )

    logger.info(f"{config.app.name} v{config.app.version}")
    return logger

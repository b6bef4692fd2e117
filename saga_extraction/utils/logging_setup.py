"""Loguru sink configuration shared by the CLI and long-running workers."""

import sys
from pathlib import Path

from loguru import logger

from saga_extraction.utils.config import LoggingConfig

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> | <level>{message}</level>"
)


def setup_logging(config: LoggingConfig | None = None, *, verbose: bool = False) -> None:
    """Replace the default sink with a console sink and an optional rotating file sink."""
    config = config or LoggingConfig()
    level = "DEBUG" if verbose else config.level.upper()
    serialize = config.format == "json"

    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level)

    if config.file:
        target = Path(config.file)
        target.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(target),
            level=level,
            rotation=config.rotation,
            retention=config.retention,
            compression=config.compression,
            serialize=serialize,
            enqueue=True,
        )

    logger.debug("Logging configured", level=level, file=config.file, serialize=serialize)

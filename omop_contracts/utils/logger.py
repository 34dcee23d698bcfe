"""
Loguru setup for the contract engine and its queue workers.

Contract reports already carry their ``[correlation=... message=...]`` prefix
in the message text, so the sinks only add time, level and origin. The
queue stack (taskiq, aio-pika, aiormq) logs through the standard library and
is routed into loguru by ``InterceptHandler``.
"""

import inspect
import logging
import sys
from pathlib import Path

from loguru import logger as _logger

from ..settings import Settings, settings

DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

LOG_FILE_NAME = "omop_contracts.log"

QUEUE_LOGGERS = ("taskiq", "aio_pika", "aiormq")


class InterceptHandler(logging.Handler):
    """Forward standard library records to loguru at the matching level."""

    def emit(self, record: logging.LogRecord) -> None:
        level: str | int
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Report the original caller, not the logging module
        frame, depth = inspect.currentframe(), 0
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        _logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    level: str = "INFO",
    format: str | None = None,
    log_file: str | Path | None = None,
    rotation: str = "20 MB",
    retention: str = "1 week",
) -> None:
    """
    Replace loguru's sinks with a stderr sink and, optionally, a rotating file.

    Args:
        level: Minimum log level to capture
        format: Sink format string (default: ``DEFAULT_FORMAT``)
        log_file: Rotating log file, created with its parent directory; None disables it
        rotation: When to rotate the log file (size or time)
        retention: How long to keep rotated files
    """
    format = format or DEFAULT_FORMAT

    _logger.remove()
    _logger.add(sys.stderr, level=level, format=format, colorize=True, backtrace=True)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(log_path),
            level=level,
            format=format,
            rotation=rotation,
            retention=retention,
            compression="zip",
            backtrace=True,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for log_name in QUEUE_LOGGERS:
        logging.getLogger(log_name).handlers = [InterceptHandler()]


def configure_from_settings(config: Settings) -> None:
    """Apply the ``log_*`` fields of a Settings instance."""
    setup_logging(
        level=config.log_level,
        format=config.log_format,
        log_file=config.get_log_dir() / LOG_FILE_NAME if config.log_to_file else None,
        rotation=config.log_rotation,
        retention=config.log_retention,
    )


configure_from_settings(settings)

logger = _logger

"""
Logging utilities for arcquery.

Modules of the query engine log through loguru's ``logger``. The package
disables its own messages on import, so a host that embeds the engine keeps
control of its logging; ``setup_logging`` is for programs that own the
process, like the command line tool.
"""

import inspect
import logging
import sys

from loguru import logger as _logger

from ..settings import Settings, settings

DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# Standard library loggers of the database stack
INTERCEPTED_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "asyncpg")


class InterceptHandler(logging.Handler):
    """Redirect standard library log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        level: str | int
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller the record originated from
        frame, depth = inspect.currentframe(), 0
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        _logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(config: Settings | None = None, serialize: bool = False) -> None:
    """
    Configure loguru sinks and enable the messages of arcquery.

    Args:
        config: Settings holding the log level, format and file options;
            the global settings by default
        serialize: Whether the file sink writes JSON records
    """
    config = config or settings
    log_format = config.log_format or DEFAULT_FORMAT

    _logger.remove()
    _logger.add(
        sys.stderr,
        level=config.log_level,
        format=log_format,
        colorize=True,
        backtrace=True,
        diagnose=config.debug,
    )

    if config.log_to_file:
        log_path = config.get_log_dir() / "arcquery.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(log_path),
            level=config.log_level,
            format=log_format,
            rotation=config.log_rotation,
            retention=config.log_retention,
            compression="zip",
            serialize=serialize,
            backtrace=True,
            diagnose=config.debug,
        )

    for log_name in INTERCEPTED_LOGGERS:
        stdlib_logger = logging.getLogger(log_name)
        stdlib_logger.handlers = [InterceptHandler()]
        stdlib_logger.propagate = False
    # SQL statements are echoed in debug mode only
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if config.debug else logging.WARNING)

    _logger.enable("arcquery")


logger = _logger

"""
Logging configuration.

Handlers are attached to the ``sqlbulk`` logger rather than the root
logger, so an application that already configures logging keeps its own
handlers and only gains the library's output when it asks for it.
"""

import logging
import logging.handlers
import os
import sys

from .formatters import ConsoleFormatter, JSONFormatter

LIBRARY_LOGGER = "sqlbulk"

_TRUTHY = ("true", "1", "yes")

# Exporter retries are noisy when no collector is running
_QUIET_LOGGERS = ("opentelemetry", "grpc")


def _file_handler(log_file: str, max_bytes: int, backup_count: int) -> logging.Handler:
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        filename=log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    console_output: bool = True,
    json_format: bool = False,
    logger_name: str = LIBRARY_LOGGER,
    propagate: bool = False,
    max_bytes: int = 100 * 1024 * 1024,  # 100MB
    backup_count: int = 5,
) -> logging.Logger:
    """
    Attach handlers to the library logger.

    Args:
        level: Log level name; unknown names fall back to INFO
        log_file: Rotating log file path (None disables file output)
        console_output: Write records to stderr
        json_format: Emit JSON lines instead of the console layout
        logger_name: Logger to configure; ``""`` configures the root logger
        propagate: Also pass records to ancestor handlers
        max_bytes: Log file size that triggers rotation
        backup_count: Rotated log files to keep

    Returns:
        The configured logger
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    target = logging.getLogger(logger_name or None)
    for handler in target.handlers[:]:
        target.removeHandler(handler)
        handler.close()
    target.setLevel(numeric_level)
    if logger_name:
        target.propagate = propagate

    handlers: list[logging.Handler] = []
    if console_output:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(JSONFormatter(app_name=LIBRARY_LOGGER) if json_format
                             else ConsoleFormatter(use_colors=True))
        handlers.append(console)
    if log_file:
        file_handler = _file_handler(log_file, max_bytes, backup_count)
        file_handler.setFormatter(JSONFormatter(app_name=LIBRARY_LOGGER) if json_format
                                  else ConsoleFormatter(use_colors=False))
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(numeric_level)
        target.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    target.debug(
        f"Logging initialized: level={logging.getLevelName(numeric_level)}, "
        f"file={log_file or 'none'}, console={console_output}, json={json_format}"
    )
    return target


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def shutdown_logging(logger_name: str = LIBRARY_LOGGER) -> None:
    """
    Close and detach the handlers installed by :func:`setup_logging`,
    releasing log file handles.

    Example:
        import atexit
        atexit.register(shutdown_logging)
    """
    target = logging.getLogger(logger_name or None)
    for handler in target.handlers[:]:
        target.removeHandler(handler)
        try:
            handler.close()
        except OSError as e:
            print(f"sqlbulk: failed to close log handler: {e}", file=sys.stderr)


def configure_from_env() -> logging.Logger:
    """
    Configure the library logger from environment variables

    Environment variables:
        SQLBULK_LOG_LEVEL: Log level (default: INFO)
        SQLBULK_LOG_FILE: Log file path (default: none)
        SQLBULK_LOG_JSON: Use JSON format (default: false)
        SQLBULK_LOG_CONSOLE: Enable console output (default: true)
    """
    return setup_logging(
        level=os.getenv("SQLBULK_LOG_LEVEL", "INFO"),
        log_file=os.getenv("SQLBULK_LOG_FILE"),
        console_output=os.getenv("SQLBULK_LOG_CONSOLE", "true").lower() in _TRUTHY,
        json_format=os.getenv("SQLBULK_LOG_JSON", "false").lower() in _TRUTHY,
    )

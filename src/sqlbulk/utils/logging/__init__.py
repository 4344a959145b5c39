"""
Structured logging for bulk operations

Usage:
    from sqlbulk.utils.logging import setup_logging, get_logger

    # Once at application startup
    setup_logging(level="INFO", json_format=True)

    logger = get_logger(__name__)
    logger.info("Staged rows", extra={"table_name": "dbo.Books", "rows": 500})
"""

from .config import configure_from_env, get_logger, setup_logging, shutdown_logging
from .formatters import ConsoleFormatter, JSONFormatter
from .handlers import ContextLogger

__all__ = [
    "setup_logging",
    "get_logger",
    "configure_from_env",
    "shutdown_logging",
    "JSONFormatter",
    "ConsoleFormatter",
    "ContextLogger",
]

"""
Logger wrapper that carries per-operation context.
"""

import logging
from typing import Any


class ContextLogger:
    """
    Logger wrapper that adds contextual information to all log messages

    Usage:
        logger = ContextLogger(__name__, table="dbo.Books", operation="upsert")
        logger.info("Staged rows", rows=500)
        # The record carries table, operation and rows
    """

    def __init__(self, name: str, **context):
        self.logger = logging.getLogger(name)
        self.context = context

    def _log(self, level: int, msg: str, *args, exc_info=None, **kwargs) -> None:
        if not self.logger.isEnabledFor(level):
            return
        self.logger.log(
            level,
            msg,
            *args,
            exc_info=exc_info,
            extra={**self.context, **kwargs},
            stacklevel=3,
        )

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, exc_info=None, **kwargs) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def update_context(self, **context) -> None:
        self.context.update(context)

    def get_context(self) -> dict[str, Any]:
        return self.context.copy()

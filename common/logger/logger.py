# common/logger/logger.py
"""
Application logger with explicit initialization.

Usage:
    from common.logger import get_app_logger

    logger = get_app_logger(__name__)
    logger.info("Room created", room_name="appointment-42-1736517600000")
"""

from typing import Any, Optional
import structlog

from common.config.structlog_config import get_logger as _get_structlog_logger


class AppLogger:
    """
    Application logger wrapper.

    Provides a type-safe interface to structlog; the underlying bound logger
    is resolved lazily so module-level loggers can be created before
    configure_structlog() runs.
    """

    def __init__(self, name: str = "app") -> None:
        self._name = name
        self._logger_instance: Optional[structlog.BoundLogger] = None

    @property
    def _logger(self) -> structlog.BoundLogger:
        if self._logger_instance is None:
            self._logger_instance = _get_structlog_logger(self._name)
        return self._logger_instance

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._logger.debug(msg, **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self._logger.info(msg, **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._logger.warning(msg, **kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._logger.error(msg, **kwargs)

    def critical(self, msg: str, **kwargs: Any) -> None:
        self._logger.critical(msg, **kwargs)


def get_app_logger(name: str = "app") -> AppLogger:
    """Get application logger instance."""
    return AppLogger(name=name)


# Convenience instance for simple usage
logger = get_app_logger()

__all__ = ["logger", "AppLogger", "get_app_logger"]

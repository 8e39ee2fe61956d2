"""
Logging setup and configuration utilities.

Modules log through ``logging.getLogger(__name__)``; ``setup_logging``
routes those records into loguru sinks (console and rotating file).
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger as loguru_logger

from ..config.models import LoggingConfig
from ...core.interfaces.lifecycle import IComponent


class InterceptHandler(logging.Handler):
    """Forward standard library log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: Any = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller that emitted the record, skipping logging internals
        frame = logging.currentframe()
        depth = 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        loguru_logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage())


def setup_logging(config: LoggingConfig) -> None:
    """
    Setup broker logging with the given configuration.

    Args:
        config: Logging configuration
    """
    loguru_logger.remove()

    if config.console_enabled:
        loguru_logger.add(
            sys.stderr,
            format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
                   "<level>{level: <8}</level> | "
                   "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
                   "<level>{message}</level>",
            level=config.level.upper(),
            colorize=True,
            backtrace=True,
            diagnose=False
        )

    if config.file_enabled:
        log_dir = Path(config.log_directory)
        log_dir.mkdir(parents=True, exist_ok=True)
        loguru_logger.add(
            log_dir / "broker.log",
            format=config.format,
            level=config.level.upper(),
            rotation=config.max_file_size,
            retention=config.backup_count,
            compression="zip",
            backtrace=True,
            diagnose=False
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    # asyncssh is chatty at INFO
    logging.getLogger("asyncssh").setLevel(logging.WARNING)


class LoggingManager(IComponent):
    """
    Logging manager for runtime logging configuration.
    """

    def __init__(self, config: LoggingConfig) -> None:
        self._config = config
        self._started = False
        self._logger = logging.getLogger(__name__)

    @property
    def name(self) -> str:
        return "LoggingManager"

    async def start(self) -> None:
        if self._started:
            return

        setup_logging(self._config)
        self._started = True

        self._logger.info(f"Log level: {self._config.level}")
        self._logger.info(f"Log directory: {self._config.log_directory}")

    async def stop(self) -> None:
        if not self._started:
            return

        self._logger.info("Logging manager stopped")
        await loguru_logger.complete()
        self._started = False

    async def check_health(self) -> Dict[str, Any]:
        log_dir = Path(self._config.log_directory)

        return {
            'healthy': True,
            'status': 'running' if self._started else 'stopped',
            'details': {
                'log_level': self._config.level,
                'log_directory': str(log_dir),
                'log_directory_exists': log_dir.exists(),
                'console_enabled': self._config.console_enabled,
                'file_enabled': self._config.file_enabled,
            }
        }

    def get_logger(self, name: str) -> Any:
        """Get a loguru logger bound to ``name``."""
        return loguru_logger.bind(name=name)

    def log_error(self, message: str, error: Optional[Exception] = None, **kwargs: Any) -> None:
        """
        Log an error message with optional exception.

        Args:
            message: Error message
            error: Exception instance
            **kwargs: Additional context
        """
        if error:
            loguru_logger.bind(**kwargs).opt(exception=error).error(f"{message}: {error}")
        else:
            loguru_logger.bind(**kwargs).error(message)

    def log_structured(self, level: str, message: str, **kwargs: Any) -> None:
        """
        Log a message with structured context attached as extra fields.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            message: Log message
            **kwargs: Additional structured data
        """
        loguru_logger.bind(**kwargs).log(level.upper(), message)

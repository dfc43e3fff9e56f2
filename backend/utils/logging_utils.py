"""
Structured Logging Utilities

Configures application logging and provides utilities for adding structured
context to log messages, improving observability and debugging.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional
from contextvars import ContextVar


# Context variable for operation-scoped logging context
_logging_context: ContextVar[Dict[str, Any]] = ContextVar('logging_context', default={})

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class ContextFormatter(logging.Formatter):
    """Formatter that appends structured context (session_id=..., ...) to the message"""

    CONTEXT_KEYS = ("session_id", "schedule_id", "instance_name", "operation")

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        parts = [
            f"{key}={getattr(record, key)}"
            for key in self.CONTEXT_KEYS
            if getattr(record, key, None) is not None
        ]
        if parts:
            message = f"{message} [{' '.join(parts)}]"
        return message


def configure_logging(log_dir: Path, level: int = logging.INFO) -> Path:
    """
    Configure the root logger with a rotating file handler and console output.

    Args:
        log_dir: Directory for orchestrator.log (created if missing)
        level: Root log level

    Returns:
        Path of the log file
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "orchestrator.log"

    formatter = ContextFormatter(LOG_FORMAT)

    # File handler with rotation (10MB per file, keep 5 backups)
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    return log_file


class StructuredLogger:
    """
    Wrapper around standard logger that adds structured context.

    Usage:
        logger = StructuredLogger(__name__)
        logger.info("Schedule fired", extra={
            "schedule_id": schedule.id,
            "session_id": schedule.session_id,
        })
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _add_context(self, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        context = _logging_context.get().copy()
        if extra:
            context.update(extra)
        return context

    def debug(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self.logger.debug(message, extra=self._add_context(extra))

    def info(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self.logger.info(message, extra=self._add_context(extra))

    def warning(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self.logger.warning(message, extra=self._add_context(extra))

    def error(self, message: str, extra: Optional[Dict[str, Any]] = None, exc_info: bool = False):
        self.logger.error(message, extra=self._add_context(extra), exc_info=exc_info)


def set_logging_context(**kwargs):
    """
    Set logging context for the current task.

    This context is included in every StructuredLogger message emitted
    within the current context (e.g. one schedule dispatch).
    """
    context = _logging_context.get().copy()
    context.update(kwargs)
    _logging_context.set(context)


def clear_logging_context():
    """Clear the logging context."""
    _logging_context.set({})

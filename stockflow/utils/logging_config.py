"""
Logging configuration for the stock-and-flow engine
Supports JSON logs in production and human-readable logs in development
Tags records emitted during a simulation run with its run ID
"""

import logging
import sys
import json
import uuid
from typing import Any, Dict, Optional
from logging.handlers import RotatingFileHandler
from contextvars import ContextVar, Token
import os

from stockflow.config import Settings, get_settings

# Context variable for the current simulation run ID
run_id_context: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

# LogRecord attributes that are not user extras
_STANDARD_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "run_id",
}


def _record_run_id(record: logging.LogRecord) -> Optional[str]:
    return run_id_context.get() or getattr(record, "run_id", None)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        run_id = _record_run_id(record)
        if run_id:
            log_data["run_id"] = run_id

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields from record
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_KEYS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter with run ID support"""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as human-readable string"""
        run_id = _record_run_id(record)

        base_format = "%(asctime)s - %(name)s - %(levelname)s"
        if run_id:
            base_format += f" - [run_id={run_id}]"
        base_format += " - %(message)s"

        formatter = logging.Formatter(base_format, datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> None:
    """
    Setup logging configuration

    Meant for applications embedding the engine; the engine itself never
    installs handlers.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (for production)
        log_file: Optional log file path
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup log files to keep
    """
    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = HumanReadableFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        # Ensure log directory exists
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def setup_logging_from_settings(settings: Optional[Settings] = None) -> None:
    """Setup logging from the engine settings"""
    settings = settings or get_settings()
    setup_logging(
        level="DEBUG" if settings.debug else settings.log_level,
        json_format=settings.log_format_json,
        log_file=settings.log_file,
        max_bytes=settings.log_max_bytes,
        backup_count=settings.log_backup_count,
    )


def set_run_id(run_id: Optional[str] = None) -> Token:
    """
    Set run ID in context

    Args:
        run_id: Optional run ID. If None, generates a new UUID.

    Returns:
        Context token for reset_run_id()
    """
    if run_id is None:
        run_id = str(uuid.uuid4())
    return run_id_context.set(run_id)


def reset_run_id(token: Token) -> None:
    """Restore the run ID that was current before set_run_id()"""
    run_id_context.reset(token)


def get_run_id() -> Optional[str]:
    """
    Get current run ID from context

    Returns:
        Current run ID or None
    """
    return run_id_context.get()

"""
Structured Logging Configuration for Alpaka

Provides JSON-formatted logging for production with:
- Request ID tracking for API calls
- Job ID tracking for worker runs
- Structured fields passed through `extra={...}`
- Console and optional file handlers
"""

import logging
import json
import sys
from datetime import datetime
from typing import Any, Dict, Optional
from contextvars import ContextVar
import os

# Context variables carried across async calls
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
job_id_var: ContextVar[Optional[str]] = ContextVar('job_id', default=None)

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'message', 'pathname', 'process', 'processName', 'relativeCreated',
    'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info', 'taskName'
}


class JSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs logs as JSON.

    Includes:
    - timestamp (ISO 8601)
    - level, logger name and message
    - request_id / job_id (if available)
    - additional context fields
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string"""

        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        job_id = job_id_var.get()
        if job_id:
            log_data["job_id"] = job_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Fields added via logger.info("msg", extra={"key": "value"})
        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["context"] = extra_fields

        return json.dumps(log_data, ensure_ascii=True, default=str)


class StandardFormatter(logging.Formatter):
    """
    Standard formatter for development (human-readable).

    Format: [TIMESTAMP] LEVEL - logger - message (request_id=..., job_id=...)
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as standard string"""

        timestamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S")
        base = f"[{timestamp}] {record.levelname:8s} - {record.name} - {record.getMessage()}"

        tags = []
        request_id = request_id_var.get()
        if request_id:
            tags.append(f"request_id={request_id}")
        job_id = job_id_var.get()
        if job_id:
            tags.append(f"job_id={job_id}")
        if tags:
            base += f" ({', '.join(tags)})"

        if record.exc_info:
            base += "\n" + self.formatException(record.exc_info)

        return base


def setup_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for Alpaka.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: If True, use JSON formatter (production), else standard formatter (dev)
        log_file: Optional file path to write logs to

    Environment Variables:
        LOG_LEVEL: Override log level (default: INFO)
        JSON_LOGS: If "true", enable JSON logging (default: false)
        LOG_FILE: File path for log output

    Examples:
        setup_logging(level="DEBUG", json_logs=False)
        setup_logging(level="INFO", json_logs=True, log_file="/var/log/alpaka.log")
    """

    level = os.getenv("LOG_LEVEL", level).upper()
    json_logs = os.getenv("JSON_LOGS", "true" if json_logs else "false").lower() == "true"
    log_file = os.getenv("LOG_FILE", log_file)

    numeric_level = getattr(logging, level, logging.INFO)
    formatter = JSONFormatter() if json_logs else StandardFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logger = logging.getLogger(__name__)
    logger.info(
        "Logging configured",
        extra={
            "level": level,
            "json_logs": json_logs,
            "log_file": log_file or "none"
        }
    )


def set_request_id(request_id: str) -> None:
    """
    Set request ID for current async context.

    Called by the API middleware at the start of each request; every
    subsequent log line in that context includes it.
    """
    request_id_var.set(request_id)


def clear_request_id() -> None:
    """Clear request ID from current async context."""
    request_id_var.set(None)


def get_request_id() -> Optional[str]:
    """Get current request ID, None if not set."""
    return request_id_var.get()


def set_job_id(job_id: Optional[str]) -> None:
    """Set the job being processed by this worker context."""
    job_id_var.set(job_id)


def clear_job_id() -> None:
    job_id_var.set(None)

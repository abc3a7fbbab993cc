"""
MetaTx Gateway - Structured Logging Configuration

Configures structured JSON logging:
- JSON format for easy parsing and aggregation
- Per-request correlation IDs (the request digest) on every record
- Optional rotating log file

Usage:
    from metatx.core.logging_config import setup_logging

    logger = setup_logging(name="metatx", level="INFO")

    with RequestContext("9f2c..."):
        logger.info("Admitted", extra={"event": "gateway.admitted"})
"""

import logging
import logging.handlers
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

# Correlation ID of the request currently being processed
request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class RequestIDFilter(logging.Filter):
    """Filter to add the current request ID to log records"""

    def filter(self, record):
        record.request_id = request_id.get() or "NO-ID"
        return True


class RequestContext:
    """
    Context manager binding a request ID to every log record emitted inside it.

    Usage:
        with RequestContext(digest.hex()[:16]):
            gateway.validate(request)
    """

    def __init__(self, value: str):
        self.request_id = value
        self.token = None

    def __enter__(self):
        self.token = request_id.set(self.request_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        request_id.reset(self.token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter with additional context fields.

    Adds timestamp, environment, service and source location to all records.
    """

    def __init__(
        self,
        fmt: str = "%(timestamp)s %(level)s %(name)s %(message)s",
        timestamp: bool = True,
        environment: Optional[str] = None,
        service_name: str = "metatx",
    ):
        super().__init__(fmt=fmt)
        self.timestamp = timestamp
        self.environment = environment or "production"
        self.service_name = service_name

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        """Add custom fields to log record."""
        super().add_fields(log_record, record, message_dict)

        if self.timestamp and "timestamp" not in log_record:
            log_record["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

        log_record["environment"] = self.environment
        log_record["service"] = self.service_name

        if not log_record.get("level"):
            log_record["level"] = record.levelname.lower()

        rid = getattr(record, "request_id", None) or request_id.get()
        if rid:
            log_record["request_id"] = rid

        log_record["source"] = {
            "function": record.funcName,
            "module": record.module,
            "line": record.lineno,
        }


def setup_logging(
    name: str = "metatx",
    log_file: Optional[str] = None,
    level: str = "INFO",
    environment: str = "production",
    json_format: bool = True,
    enable_console: bool = True,
    max_bytes: int = 100 * 1024 * 1024,  # 100MB
    backup_count: int = 10,
) -> logging.Logger:
    """
    Setup structured logging for the gateway.

    Args:
        name: Logger name (typically the package name)
        log_file: Path to JSON log file (optional)
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        environment: Environment identifier (development, staging, production)
        json_format: Emit JSON records; plain text otherwise
        enable_console: Whether to log to stderr
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup files to keep

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers to avoid duplicates
    logger.handlers = []

    if json_format:
        formatter: logging.Formatter = CustomJsonFormatter(
            environment=environment,
            service_name=name.split(".")[0],
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(request_id)s] %(name)s: %(message)s"
        )

    request_filter = RequestIDFilter()

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, level.upper()))
        console_handler.setFormatter(formatter)
        console_handler.addFilter(request_filter)
        logger.addHandler(console_handler)

    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
            file_handler.setLevel(getattr(logging, level.upper()))
            file_handler.setFormatter(formatter)
            file_handler.addFilter(request_filter)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(
                "Could not create file handler for %s: %s",
                log_file,
                e,
                extra={"event": "logging.file_handler_failed"},
            )

    return logger


def setup_logging_from_config(config) -> logging.Logger:
    """Configure the ``metatx`` logger from a GatewayConfig."""
    return setup_logging(
        name="metatx",
        log_file=config.logging.log_file,
        level=config.logging.level,
        environment=config.environment.value,
        json_format=config.logging.json_format,
    )

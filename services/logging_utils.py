#!/usr/bin/env python3
"""
Sensu Alertmanager Events - JSON Logging Utilities

Structured JSON logging (NDJSON) for the alertmanager events check, with a
plain text fallback. Every record carries the correlation ID of the check run
that produced it, so the per-alert lines emitted by dispatch worker threads can
be tied back to one run.

Usage:
    from logging_utils import setup_json_logging, CorrelationID

    logger = setup_json_logging(
        service_name="alertmanager_events",
        version="1.0.0",
        level="INFO"
    )
    CorrelationID.set("3f2a9c1d")
    logger.info("Number of Alerts found: 3", extra={"alerts": 3})

Environment Variables:
    LOG_JSON_ENABLED: Enable JSON logging (default: false)
    LOG_LEVEL: Logging level (default: INFO)
    POD_NAME: Pod name for metadata
"""

import os
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict


TEXT_FORMAT = "%(asctime)s - %(levelname)s - [%(correlation_id)s] - %(message)s"

_RESERVED_ATTRS = frozenset([
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
    "correlation_id",
])


class CorrelationID:
    """Thread-local storage for the correlation ID of the current run."""
    _storage = threading.local()

    @staticmethod
    def set(cid):
        CorrelationID._storage.id = cid

    @staticmethod
    def get():
        return getattr(CorrelationID._storage, 'id', 'system')


class CorrelationIdFilter(logging.Filter):
    """Automatically adds correlation ID to all log records."""
    def filter(self, record):
        record.correlation_id = CorrelationID.get()
        return True


class NDJSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per line.

    Fields included:
    - timestamp: ISO 8601 format with timezone
    - level, message, logger, module, function, line, thread
    - service, version, pod_name
    - correlation_id: check run correlation ID
    - error: exception details (if exception present)
    - any field passed through `extra={}`
    """

    def __init__(self, service_name: str, version: str):
        super().__init__()
        self.service_name = service_name
        self.version = version
        self.pod_name = os.getenv("POD_NAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": threading.get_ident(),
            "service": self.service_name,
            "version": self.version,
            "pod_name": self.pod_name,
            "correlation_id": getattr(record, "correlation_id", None) or "system",
        }

        if record.exc_info:
            log_entry["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        try:
            return json.dumps(log_entry, default=str)
        except Exception as e:
            return json.dumps(
                {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "level": "ERROR",
                    "message": f"Failed to serialize log record: {e}",
                    "service": self.service_name,
                    "correlation_id": "system",
                }
            )


def setup_json_logging(
    service_name: str,
    version: str,
    level: str = "INFO",
) -> logging.Logger:
    """
    Configure logging for the service and return the root logger.

    JSON (NDJSON) output is used when LOG_JSON_ENABLED is truthy, otherwise
    the text format. The function is idempotent: existing root handlers are
    replaced.

    Args:
        service_name: Name of the service (e.g., "alertmanager_events")
        version: Service version string (e.g., "1.0.0")
        level: Logging level as string (default: "INFO")

    Returns:
        Configured logger instance (root logger)
    """
    json_enabled = os.getenv("LOG_JSON_ENABLED", "false").lower() in (
        "true",
        "1",
        "yes",
        "on",
    )
    log_level = os.getenv("LOG_LEVEL", level).upper()

    logger = logging.getLogger()
    logger.handlers.clear()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    handler = logging.StreamHandler()
    handler.setLevel(logger.level)
    # On the handler so records from every named logger get the field
    handler.addFilter(CorrelationIdFilter())

    if json_enabled:
        handler.setFormatter(NDJSONFormatter(service_name=service_name, version=version))
        logger.addHandler(handler)
        logger.info(f"JSON logging enabled for service={service_name} version={version}")
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
        logger.addHandler(handler)
        logger.info(f"Standard logging enabled for service={service_name}")

    return logger


def get_logger(name: str = __name__) -> logging.Logger:
    """Get a named logger that inherits the setup_json_logging() configuration."""
    return logging.getLogger(name)

"""Logging and event utilities for phaseledger.

This module provides structured logging, operation timing and the in-process
event hooks that carry ledger transitions to best-effort subscribers such as
the metrics collector.
"""

from __future__ import annotations

import json
import logging as std_logging
import time
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .models import utc_now


def setup_logging(log_level: Union[str, int] = std_logging.INFO, log_file: Optional[Path] = None) -> None:
    """Setup structured logging for phaseledger."""

    logger = std_logging.getLogger("phaseledger")
    logger.setLevel(log_level)
    logger.handlers.clear()

    detailed_formatter = std_logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # stdout belongs to the MCP stdio transport; StreamHandler writes to stderr
    console_handler = std_logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(detailed_formatter)
    logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = std_logging.FileHandler(log_file)
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    logger.info("phaseledger logging initialized")


class JsonFormatter(std_logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: std_logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


def log_performance(operation_name: str):
    """Decorator logging the wall time of an operation, success or failure."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            logger = std_logging.getLogger("phaseledger.performance")
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration = time.time() - start_time
                logger.debug(
                    f"Operation {operation_name} failed after {duration:.3f}s",
                    extra={"extra_fields": {
                        "operation": operation_name,
                        "duration": duration,
                        "status": "error",
                        "error_type": type(e).__name__,
                    }},
                )
                raise
            duration = time.time() - start_time
            logger.debug(
                f"Operation {operation_name} took {duration:.3f}s",
                extra={"extra_fields": {
                    "operation": operation_name,
                    "duration": duration,
                    "status": "success",
                }},
            )
            return result
        return wrapper
    return decorator


@contextmanager
def log_operation(operation_name: str, **extra_fields):
    """Context manager to log operations with custom fields."""
    logger = std_logging.getLogger("phaseledger.operations")
    start_time = time.time()

    logger.debug(f"Starting operation: {operation_name}", extra={"extra_fields": {
        "operation": operation_name,
        "status": "started",
        **extra_fields
    }})

    try:
        yield
    except Exception as e:
        duration = time.time() - start_time
        logger.error(f"Failed operation: {operation_name} after {duration:.3f}s - {e}", extra={"extra_fields": {
            "operation": operation_name,
            "status": "failed",
            "duration": duration,
            "error_type": type(e).__name__,
            "error_message": str(e),
            **extra_fields
        }})
        raise

    duration = time.time() - start_time
    logger.info(f"Completed operation: {operation_name} in {duration:.3f}s", extra={"extra_fields": {
        "operation": operation_name,
        "status": "completed",
        "duration": duration,
        **extra_fields
    }})


HookCallback = Callable[..., Any]


class EventHooks:
    """Fire-and-forget event channel for ledger events.

    Callbacks never affect the emitter: each one runs in isolation and any
    exception it raises is logged and dropped.
    """

    def __init__(self):
        self.hooks: Dict[str, List[HookCallback]] = {}
        self.logger = std_logging.getLogger("phaseledger.events")

    def register_hook(self, event_type: str, callback: HookCallback) -> None:
        """Register a callback for a specific event type."""
        self.hooks.setdefault(event_type, []).append(callback)
        self.logger.debug(f"Registered hook for event: {event_type}")

    def clear(self, event_type: Optional[str] = None) -> None:
        if event_type is None:
            self.hooks.clear()
        else:
            self.hooks.pop(event_type, None)

    def trigger_hooks(self, event_type: str, **data) -> int:
        """Run every callback for ``event_type``; returns how many succeeded."""
        callbacks = list(self.hooks.get(event_type, []))
        if callbacks:
            self.logger.debug(f"Triggering {len(callbacks)} hooks for event: {event_type}")
        succeeded = 0
        for hook in callbacks:
            try:
                hook(**data)
            except Exception as e:
                self.logger.error(f"Hook failed for event {event_type}: {e}", exc_info=True)
            else:
                succeeded += 1
        return succeeded

    def emit(self, event_type: str, feature_id: Optional[str] = None, **data) -> None:
        """Log an event and trigger its hooks."""
        event_data = {
            "timestamp": utc_now(),
            "event_type": event_type,
            "feature_id": feature_id,
            **data
        }
        self.logger.info(f"Event: {event_type}", extra={"extra_fields": event_data})

        # hooks receive the payload without the event_type key
        hook_data = {k: v for k, v in event_data.items() if k != "event_type"}
        self.trigger_hooks(event_type, **hook_data)


# Default hooks for callers that do not wire their own
event_hooks = EventHooks()


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields):
    """Log an error with rich context information."""
    logger = std_logging.getLogger("phaseledger.errors")

    error_data = {
        "timestamp": utc_now(),
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context,
        **extra_fields
    }

    logger.error(
        f"Error in {context.get('operation', 'unknown operation')}: {error}",
        extra={"extra_fields": error_data},
        exc_info=True
    )

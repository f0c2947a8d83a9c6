"""Structured logging configuration for ContextMemory."""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from functools import wraps
from typing import Callable, Optional

from .config import settings

# Context variable for request tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """JSON-structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(''),
        }

        # Add extra fields
        if hasattr(record, 'duration_ms'):
            log_data['duration_ms'] = record.duration_ms
        if hasattr(record, 'operation'):
            log_data['operation'] = record.operation
        if hasattr(record, 'context_id'):
            log_data['context_id'] = record.context_id
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(level: Optional[str] = None) -> None:
    """Route the package logger to stderr as JSON lines (level defaults to settings.log_level)."""
    level = level or settings.log_level
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())

    root = logging.getLogger("context_memory")
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.propagate = False


def with_request_id(func: Callable) -> Callable:
    """Decorator to add a request ID and timing to engine operations."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        # Nested operations share the outer request id
        if request_id_var.get(''):
            return await func(*args, **kwargs)

        request_id = str(uuid.uuid4())[:8]
        token = request_id_var.set(request_id)
        start = time.perf_counter()

        try:
            return await func(*args, **kwargs)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            logger = logging.getLogger(func.__module__)
            logger.debug(
                "Operation completed",
                extra={'duration_ms': round(duration_ms, 2), 'operation': func.__name__}
            )
            request_id_var.reset(token)

    return wrapper

"""Structured logging configuration.

Configures structlog on top of stdlib logging with request correlation.

Features:
- JSON-formatted logs in production (human-readable in dev)
- Request ID and account ID bound through contextvars
- ISO8601 timestamps in UTC
- Stack traces for exceptions

Log format (production):
    {
        "timestamp": "2026-10-17T10:30:45.123456Z",
        "level": "info",
        "logger": "llm_broker.execution",
        "event": "execution.attempt_succeeded",
        "request_id": "req_789...",
        "account_id": "acct_123",
        "model_id": "gpt-4o",
        "latency_ms": 812.4
    }
"""

from __future__ import annotations

import logging
import sys
import uuid

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def new_request_id() -> str:
    """Generate a request identifier in the ``req_<hex>`` form."""
    return f"req_{uuid.uuid4().hex[:16]}"


def bind_request_context(request_id: str) -> None:
    """Bind the request ID to log context for this request."""
    structlog.contextvars.bind_contextvars(request_id=request_id)


def bind_account_context(account_id: str) -> None:
    """Bind the account (subscription owner) ID to log context."""
    structlog.contextvars.bind_contextvars(account_id=str(account_id))


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()

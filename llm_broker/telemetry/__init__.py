"""Telemetry package: structured logging with request correlation."""

from __future__ import annotations

from llm_broker.telemetry.logging import (
    bind_account_context,
    bind_request_context,
    clear_context,
    configure_logging,
    new_request_id,
)

__all__ = [
    "bind_account_context",
    "bind_request_context",
    "clear_context",
    "configure_logging",
    "new_request_id",
]

"""Structured logging configuration for the routing core.

Configures structlog with JSON output in production and a console renderer
in development. Routing code binds user and decision identifiers into the
contextvars so every log line emitted while handling a request carries them.

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "logger": "airouter.routing.router",
        "event": "router.route_selected",
        "request_id": "req_789...",
        "user_id": "user_123",
        "decision_id": "dec_...",
        "provider": "anthropic",
        "model": "claude-3-opus"
    }
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor


def add_service_name(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag every entry with the emitting service.

    Args:
        logger: Logger instance
        method_name: Method name being called
        event_dict: Event dictionary to enhance

    Returns:
        Enhanced event dictionary
    """
    event_dict.setdefault("service", "airouter")
    return event_dict


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the routing core.

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
        add_service_name,
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


def bind_request_context(request_id: str) -> None:
    """Bind the caller's correlation id to log context.

    Args:
        request_id: Correlation identifier supplied by the caller
    """
    structlog.contextvars.bind_contextvars(request_id=request_id)


def bind_user_context(user_id: str | None) -> None:
    """Bind user ID to log context for this request.

    Args:
        user_id: User identifier (anonymous requests bind nothing)
    """
    if user_id:
        structlog.contextvars.bind_contextvars(user_id=str(user_id))


def bind_decision_context(decision_id: str, request_type: str, service_level: str) -> None:
    """Bind routing decision context to logs for this request.

    Args:
        decision_id: Ledger identifier of the decision
        request_type: Classified request type
        service_level: critical or standard
    """
    structlog.contextvars.bind_contextvars(
        decision_id=decision_id,
        request_type=request_type,
        service_level=service_level,
    )


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()

"""Telemetry package for observability.

This package contains structured logging setup and the context binding
helpers used by the router.
"""

from __future__ import annotations

from airouter.telemetry.logging import (
    bind_decision_context,
    bind_request_context,
    bind_user_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "bind_decision_context",
    "bind_request_context",
    "bind_user_context",
    "clear_context",
    "configure_logging",
]

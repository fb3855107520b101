"""Domain exceptions for the routing core.

Every exception carries a stable ``error_code`` so callers (and the
decision ledger) can record failures without parsing messages.
"""

from __future__ import annotations

import math
from datetime import datetime


class RoutingError(Exception):
    """Base exception for all routing failures."""

    error_code = "ROUTING_ERROR"


class AdmissionDenied(RoutingError):
    """A Critical request was refused by the per-user rate limiter."""

    error_code = "ADMISSION_DENIED"

    def __init__(
        self,
        *,
        violated_rule: str,
        retry_after_seconds: float,
        next_allowed_at: datetime,
        decision_id: str | None = None,
    ) -> None:
        self.violated_rule = violated_rule
        self.retry_after_seconds = retry_after_seconds
        self.next_allowed_at = next_allowed_at
        self.decision_id = decision_id
        super().__init__(self.user_message())

    def user_message(self) -> str:
        wait = max(1, math.ceil(self.retry_after_seconds))
        if self.violated_rule == "cooldown":
            return (
                f"Please wait {wait} seconds before submitting another health request."
            )
        return (
            f"Health request limit per {self.violated_rule} reached. "
            f"Please wait {wait} seconds (until {self.next_allowed_at.isoformat()})."
        )


class QuotaExhausted(RoutingError):
    """No provider has daily quota left at any step-down percentage."""

    error_code = "QUOTA_EXHAUSTED"

    def __init__(self, *, next_reset_at: datetime, decision_id: str | None = None) -> None:
        self.next_reset_at = next_reset_at
        self.decision_id = decision_id
        super().__init__(self.user_message())

    def user_message(self) -> str:
        return (
            "All providers have reached today's usage quota. "
            f"Capacity is restored at {self.next_reset_at.isoformat()}."
        )


class NoEligibleModel(RoutingError):
    """No model passes the eligibility filter (credentials, region, accuracy)."""

    error_code = "NO_ELIGIBLE_MODEL"


class ProviderCallFailed(RoutingError):
    """A provider call failed; raised by the call collaborator."""

    error_code = "PROVIDER_CALL_FAILED"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        model: str | None = None,
        error_code: str | None = None,
    ) -> None:
        self.provider = provider
        self.model = model
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message)


class DecisionNotFound(RoutingError):
    """The referenced decision id is not in the ledger."""

    error_code = "DECISION_NOT_FOUND"

    def __init__(self, decision_id: str) -> None:
        self.decision_id = decision_id
        super().__init__(f"Routing decision {decision_id!r} not found")


class InvalidTransition(RoutingError):
    """A status transition is not allowed by the decision state machine."""

    error_code = "INVALID_TRANSITION"

    def __init__(self, decision_id: str, current: str, target: str) -> None:
        self.decision_id = decision_id
        self.current = current
        self.target = target
        super().__init__(
            f"Decision {decision_id!r} cannot move from {current!r} to {target!r}"
        )


class StateStoreError(RoutingError):
    """The shared state store could not complete an operation."""

    error_code = "STATE_STORE_ERROR"

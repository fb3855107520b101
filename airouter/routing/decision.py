"""Routing decision record and its status state machine.

A RoutingDecision is created for every routed request and is mutated only
by the start / complete / fail / cancel / timeout / retry transitions. It is
never deleted. Terminal statuses accept no further transitions.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from airouter.exceptions import InvalidTransition


class DecisionKind(str, Enum):
    """Why the router picked the model it picked."""

    SELECTED_PRIMARY = "selected_primary"
    COST_OPTIMIZATION = "cost_optimization"
    QUOTA_EXCEEDED_STEPDOWN = "quota_exceeded_stepdown"
    EMERGENCY_OVERRIDE = "emergency_override"
    FREE_TIER_FALLBACK = "free_tier_fallback"
    FALLBACK_TO_SECONDARY = "fallback_to_secondary"
    QUOTA_EXCEEDED = "quota_exceeded"
    MODEL_UNAVAILABLE = "model_unavailable"
    RATE_LIMITED = "rate_limited"


class DecisionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


TERMINAL_STATUSES: frozenset[DecisionStatus] = frozenset(
    {
        DecisionStatus.COMPLETED,
        DecisionStatus.FAILED,
        DecisionStatus.CANCELLED,
        DecisionStatus.TIMEOUT,
    }
)

# Allowed source statuses for each target status
ALLOWED_SOURCES: dict[DecisionStatus, frozenset[DecisionStatus]] = {
    DecisionStatus.PROCESSING: frozenset({DecisionStatus.PENDING}),
    DecisionStatus.COMPLETED: frozenset({DecisionStatus.PENDING, DecisionStatus.PROCESSING}),
    DecisionStatus.FAILED: frozenset({DecisionStatus.PENDING, DecisionStatus.PROCESSING}),
    DecisionStatus.CANCELLED: frozenset({DecisionStatus.PENDING, DecisionStatus.PROCESSING}),
    DecisionStatus.TIMEOUT: frozenset({DecisionStatus.PENDING, DecisionStatus.PROCESSING}),
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class CompletionReport:
    """Outcome reported by the call collaborator after a successful call.

    Attributes:
        response_tokens: Tokens in the generated response
        actual_cost: Billed cost in USD (None = use the estimate)
        confidence: Model confidence in the response, 0-100
        duration_ms: Wall-clock call duration (None = derived from timestamps)
        feedback: Optional user rating, clamped to 0-5
        response: Response payload to cache (None = do not cache)
        provider: Provider that actually served the call, if not the routed one
        model: Model that actually served the call
    """

    response_tokens: int
    actual_cost: float | None = None
    confidence: float | None = None
    duration_ms: int | None = None
    feedback: float | None = None
    response: Any = None
    provider: str | None = None
    model: str | None = None

    def __post_init__(self) -> None:
        if self.response_tokens < 0:
            raise ValueError("response_tokens cannot be negative")
        if self.actual_cost is not None and self.actual_cost < 0:
            raise ValueError("actual_cost cannot be negative")


@dataclass
class RoutingDecision:
    """Ledger entry for one routed request."""

    request_type: str
    service_level: str
    provider: str | None
    model: str | None
    decision_kind: DecisionKind
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str | None = None
    user_id: str | None = None
    session_id: str | None = None
    endpoint: str | None = None
    routing_reason: str = ""
    step_down_percentage: int | None = None
    alternatives: list[dict[str, Any]] = field(default_factory=list)
    fallback_provider: str | None = None
    fallback_model: str | None = None
    estimated_cost: float = 0.0
    actual_cost: float | None = None
    context_tokens: int | None = None
    max_response_tokens: int | None = None
    response_tokens: int | None = None
    total_tokens: int | None = None
    quota_remaining: int | None = None
    model_accuracy: float | None = None
    confidence: float | None = None
    cost_efficiency: float | None = None
    user_feedback: float | None = None
    status: DecisionStatus = DecisionStatus.PENDING
    created_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    processing_duration_ms: int | None = None
    retry_count: int = 0
    last_retry_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    emergency: bool = False
    rate_limit_hit: bool = False
    user_tier: str | None = None
    user_region: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, target: DecisionStatus) -> bool:
        return self.status in ALLOWED_SOURCES.get(target, frozenset())

    def _require(self, target: DecisionStatus) -> None:
        if not self.can_transition(target):
            raise InvalidTransition(self.id, self.status.value, target.value)

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    def start(self, now: datetime) -> None:
        self._require(DecisionStatus.PROCESSING)
        self.status = DecisionStatus.PROCESSING
        self.started_at = now

    def complete(self, report: CompletionReport, now: datetime) -> None:
        """Move to COMPLETED and derive tokens, cost and efficiency."""
        self._require(DecisionStatus.COMPLETED)
        self.status = DecisionStatus.COMPLETED
        self.completed_at = now
        self.response_tokens = report.response_tokens
        self.total_tokens = (self.context_tokens or 0) + report.response_tokens
        self.actual_cost = (
            report.actual_cost if report.actual_cost is not None else self.estimated_cost
        )
        if report.confidence is not None:
            self.confidence = report.confidence
        if report.duration_ms is not None:
            self.processing_duration_ms = report.duration_ms
        else:
            self.processing_duration_ms = self._elapsed_ms(now)
        if report.feedback is not None:
            self.add_feedback(report.feedback)
        if report.provider and (report.provider, report.model) != (self.provider, self.model):
            self.metadata["routed_to"] = {"provider": self.provider, "model": self.model}
            self.provider = report.provider
            self.model = report.model
            self.decision_kind = DecisionKind.FALLBACK_TO_SECONDARY
        self.cost_efficiency = self.compute_cost_efficiency()

    def fail(self, error_code: str, error_message: str, now: datetime) -> None:
        self._require(DecisionStatus.FAILED)
        self.status = DecisionStatus.FAILED
        self.completed_at = now
        self.error_code = error_code
        self.error_message = error_message
        self.processing_duration_ms = self._elapsed_ms(now)

    def cancel(self, now: datetime) -> None:
        self._require(DecisionStatus.CANCELLED)
        self.status = DecisionStatus.CANCELLED
        self.completed_at = now

    def time_out(self, now: datetime) -> None:
        self._require(DecisionStatus.TIMEOUT)
        self.status = DecisionStatus.TIMEOUT
        self.completed_at = now
        self.error_code = "TIMEOUT"
        self.error_message = "No completion reported before the decision timeout"
        self.processing_duration_ms = self._elapsed_ms(now)

    def record_retry(
        self,
        error_code: str,
        error_message: str,
        now: datetime,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> None:
        """Count a failed attempt without leaving the current status."""
        if self.is_terminal:
            raise InvalidTransition(self.id, self.status.value, "retry")
        self.retry_count += 1
        self.last_retry_at = now
        self.error_code = error_code
        self.error_message = error_message
        self.metadata.setdefault("attempts", []).append(
            {
                "provider": provider or self.provider,
                "model": model or self.model,
                "error_code": error_code,
                "at": now.isoformat(),
            }
        )

    # ------------------------------------------------------------------ #
    # Derived values
    # ------------------------------------------------------------------ #

    def add_feedback(self, score: float) -> None:
        self.user_feedback = max(0.0, min(5.0, score))

    def compute_cost_efficiency(self) -> float | None:
        """Confidence per milli-dollar; None when either side is unknown or zero."""
        if self.confidence is None or not self.actual_cost:
            return None
        return self.confidence / (self.actual_cost * 1000)

    def _elapsed_ms(self, now: datetime) -> int:
        since = self.started_at or self.created_at
        return max(0, int((now - since).total_seconds() * 1000))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["decision_kind"] = self.decision_kind.value
        data["status"] = self.status.value
        return data

"""Request classification into service levels.

Health-safety request types are Critical: they get the most accurate model
available and are rate limited per user. Everything else is Standard and
optimised for cost within a small accuracy tolerance.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ServiceLevel(str, Enum):
    """Service tier derived from the request type."""

    CRITICAL = "critical"  # Health-safety: accuracy first, rate limited
    STANDARD = "standard"  # Everything else: cost first within tolerance


class RequestType(str, Enum):
    HEALTH_REPORT_ANALYSIS = "health_report_analysis"
    HEALTH_CONSULTATION = "health_consultation"
    SYMPTOM_ANALYSIS = "symptom_analysis"
    MEDICATION_INTERACTION = "medication_interaction"
    EMERGENCY_ASSESSMENT = "emergency_assessment"
    NUTRITION_ADVICE = "nutrition_advice"
    RECIPE_GENERATION = "recipe_generation"
    MEAL_PLANNING = "meal_planning"
    FITNESS_PLANNING = "fitness_planning"
    FITNESS_ADAPTATION = "fitness_adaptation"
    GENERAL_CHAT = "general_chat"
    LIFESTYLE_RECOMMENDATION = "lifestyle_recommendation"
    PROGRESS_ANALYSIS = "progress_analysis"
    GOAL_SETTING = "goal_setting"
    HABIT_COACHING = "habit_coaching"
    MOTIVATIONAL_SUPPORT = "motivational_support"


CRITICAL_REQUEST_TYPES: frozenset[str] = frozenset(
    {
        RequestType.HEALTH_REPORT_ANALYSIS.value,
        RequestType.HEALTH_CONSULTATION.value,
        RequestType.SYMPTOM_ANALYSIS.value,
        RequestType.MEDICATION_INTERACTION.value,
        RequestType.EMERGENCY_ASSESSMENT.value,
    }
)


def classify(request_type: str | RequestType) -> ServiceLevel:
    """Map a request type to its service level.

    Unknown types are Standard; only the listed health-safety types are
    Critical.
    """
    value = request_type.value if isinstance(request_type, RequestType) else str(request_type)
    if value in CRITICAL_REQUEST_TYPES:
        return ServiceLevel.CRITICAL
    return ServiceLevel.STANDARD


@dataclass
class RoutingRequest:
    """One inbound generation request as seen by the router.

    Attributes:
        request_type: Request type string (see RequestType)
        user_id: Caller identity; None for anonymous requests
        session_id: Optional conversation/session identifier
        request_id: Caller correlation id; generated when omitted
        context_tokens: Prompt size estimate (None = configured default)
        max_response_tokens: Response budget (None = configured default)
        emergency: Force Critical selection regardless of request type
        user_tier: Caller's subscription tier, recorded for analytics
        user_region: Region constraint; models with a different region are skipped
        accuracy_requirement: Optional extra accuracy floor (0-100)
        prefer_free_tier: Route to the zero-cost provider pool
        prompt: Prompt text used for cache lookup
        context: Structured context used for cache lookup
        metadata: Free-form data copied onto the decision
    """

    request_type: str
    user_id: str | None = None
    session_id: str | None = None
    request_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:16]}")
    context_tokens: int | None = None
    max_response_tokens: int | None = None
    emergency: bool = False
    user_tier: str | None = None
    user_region: str | None = None
    accuracy_requirement: float | None = None
    prefer_free_tier: bool = False
    prompt: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.request_type, RequestType):
            self.request_type = self.request_type.value
        if not self.request_type:
            raise ValueError("request_type is required")
        if self.context_tokens is not None and self.context_tokens < 0:
            raise ValueError("context_tokens cannot be negative")
        if self.max_response_tokens is not None and self.max_response_tokens < 0:
            raise ValueError("max_response_tokens cannot be negative")
        if self.accuracy_requirement is not None and not 0 <= self.accuracy_requirement <= 100:
            raise ValueError("accuracy_requirement must be between 0 and 100")

    @property
    def service_level(self) -> ServiceLevel:
        """Service level implied by the request type alone."""
        return classify(self.request_type)

    def token_estimate(self, default_context: int, default_response: int) -> int:
        """Tokens this request is expected to consume.

        Missing or zero sizes fall back to the configured defaults.
        """
        return (self.context_tokens or default_context) + (
            self.max_response_tokens or default_response
        )

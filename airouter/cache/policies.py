"""Per-request-type cache policies.

A request type without a policy is never cached. Exact-key reuse is always
allowed for a cached type; approximate (similarity) reuse only when the
policy enables smart matching with a threshold below 1.0.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class CachePolicy:
    """Caching rules for one request type.

    Attributes:
        ttl: Seconds an entry lives; re-applied in full on every hit
        tags: Labels stored with each entry
        smart_matching: Allow similarity-based reuse
        similarity_threshold: Minimum Jaccard similarity for a smart hit
    """

    ttl: int
    tags: tuple[str, ...] = ()
    smart_matching: bool = False
    similarity_threshold: float = 1.0

    def __post_init__(self) -> None:
        if self.ttl <= 0:
            raise ValueError("ttl must be positive")
        if not 0.0 < self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be in (0, 1]")

    @property
    def allows_similarity(self) -> bool:
        return self.smart_matching and self.similarity_threshold < 1.0


DAY = 86_400

DEFAULT_POLICIES: dict[str, CachePolicy] = {
    "meal_plan_generation": CachePolicy(
        ttl=DAY,
        tags=("meal_planning", "nutrition"),
        smart_matching=True,
        similarity_threshold=0.85,
    ),
    "health_report_analysis": CachePolicy(
        ttl=7 * DAY,
        tags=("health_analysis", "medical"),
        smart_matching=True,
        similarity_threshold=0.9,
    ),
    "fitness_plan_generation": CachePolicy(
        ttl=DAY,
        tags=("fitness", "exercise"),
        smart_matching=True,
        similarity_threshold=0.8,
    ),
    "chat_response": CachePolicy(
        ttl=3600,
        tags=("chat", "conversation"),
        smart_matching=False,
        similarity_threshold=1.0,
    ),
    "nutrition_analysis": CachePolicy(
        ttl=2 * DAY,
        tags=("nutrition", "analysis"),
        smart_matching=True,
        similarity_threshold=0.95,
    ),
}

# Routed request types whose answers are stored under a cache type
REQUEST_CACHE_TYPES: dict[str, str] = {
    "meal_planning": "meal_plan_generation",
    "health_report_analysis": "health_report_analysis",
    "fitness_planning": "fitness_plan_generation",
    "general_chat": "chat_response",
    "nutrition_advice": "nutrition_analysis",
}


def cache_type_for(request_type: str) -> str:
    """Cache type for a routed request type (identity when unmapped)."""
    return REQUEST_CACHE_TYPES.get(request_type, request_type)

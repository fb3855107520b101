"""Model selection policy.

Critical requests get the most accurate eligible model (cost breaks ties).
Standard requests get the cheapest model whose accuracy is within a small
tolerance of the best eligible accuracy, preferring zero-cost models.

The selector is pure: it ranks the ModelCandidate values it is given and
never touches quota or rate-limit state. Candidate construction (including
the quota remaining at a given step-down percentage) happens in
airouter.routing.quota.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from airouter.exceptions import NoEligibleModel
from airouter.routing.catalog import ModelDescriptor, is_usable_credential
from airouter.routing.classifier import RoutingRequest, ServiceLevel
from airouter.routing.decision import DecisionKind

if TYPE_CHECKING:
    from airouter.config import Settings

log = structlog.get_logger(__name__)

MAX_ALTERNATIVES = 3
MAX_FALLBACK_OPTIONS = 2


@dataclass(frozen=True)
class ModelCandidate:
    """A catalog model together with the live state it was judged on.

    Attributes:
        descriptor: Static catalog entry
        credential: Resolved credential (None for local models or when missing)
        quota_remaining: Provider tokens left at the percentage being evaluated
        free_tier: True when the owning provider is in the zero-cost pool
    """

    descriptor: ModelDescriptor
    credential: str | None
    quota_remaining: int
    free_tier: bool = False

    @property
    def provider(self) -> str:
        return self.descriptor.provider_id

    @property
    def model(self) -> str:
        return self.descriptor.model_id

    @property
    def endpoint(self) -> str:
        return self.descriptor.endpoint

    @property
    def accuracy(self) -> float:
        return self.descriptor.accuracy

    @property
    def cost_per_token(self) -> float:
        return self.descriptor.cost_per_token

    @property
    def availability(self) -> float:
        return self.descriptor.availability

    @property
    def has_credential(self) -> bool:
        if self.descriptor.credential_ref is None:
            return True
        return is_usable_credential(self.credential)

    def as_option(self) -> dict[str, str]:
        return {"provider": self.provider, "model": self.model, "endpoint": self.endpoint}


@dataclass
class Selection:
    """Outcome of one selection pass."""

    candidate: ModelCandidate
    service_level: ServiceLevel
    decision_kind: DecisionKind
    reason: str
    estimated_cost: float
    alternatives: list[dict[str, Any]] = field(default_factory=list)
    fallback: ModelCandidate | None = None
    fallback_options: list[ModelCandidate] = field(default_factory=list)
    step_down_percentage: int | None = None
    degraded: bool = False


class ModelSelector:
    """Ranks eligible candidates for a service level.

    Args:
        settings: Supplies the accuracy floor, tolerance and token defaults
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    # ------------------------------------------------------------------ #
    # Eligibility
    # ------------------------------------------------------------------ #

    def token_estimate(self, request: RoutingRequest) -> int:
        return request.token_estimate(
            self._settings.default_context_tokens,
            self._settings.default_max_response_tokens,
        )

    def estimate_cost(self, request: RoutingRequest, candidate: ModelCandidate) -> float:
        return self.token_estimate(request) * candidate.cost_per_token

    def is_eligible(
        self,
        candidate: ModelCandidate,
        service_level: ServiceLevel,
        request: RoutingRequest,
    ) -> bool:
        if (
            request.user_region
            and candidate.descriptor.region
            and candidate.descriptor.region != request.user_region
        ):
            return False
        if (
            service_level == ServiceLevel.CRITICAL
            and candidate.accuracy < self._settings.critical_accuracy_floor
        ):
            return False
        if (
            request.accuracy_requirement is not None
            and candidate.accuracy < request.accuracy_requirement
        ):
            return False
        if candidate.quota_remaining <= 0:
            return False
        if candidate.quota_remaining < self.token_estimate(request):
            return False
        return candidate.has_credential

    def eligible(
        self,
        candidates: list[ModelCandidate],
        service_level: ServiceLevel,
        request: RoutingRequest,
    ) -> list[ModelCandidate]:
        return [c for c in candidates if self.is_eligible(c, service_level, request)]

    # ------------------------------------------------------------------ #
    # Ordering
    # ------------------------------------------------------------------ #

    def order(
        self,
        service_level: ServiceLevel,
        eligible: list[ModelCandidate],
    ) -> tuple[list[ModelCandidate], bool, float | None]:
        """Return (ordered candidates, degraded flag, accuracy threshold)."""
        if service_level == ServiceLevel.CRITICAL:
            ordered = sorted(eligible, key=lambda c: (-c.accuracy, c.cost_per_token))
            return ordered, False, None

        max_accuracy = max(c.accuracy for c in eligible)
        threshold = max_accuracy - self._settings.standard_accuracy_tolerance
        qualified = [c for c in eligible if c.accuracy >= threshold]
        degraded = False
        if not qualified:
            qualified = list(eligible)
            degraded = True
        ordered = sorted(
            qualified,
            key=lambda c: (c.cost_per_token != 0, c.cost_per_token, -c.accuracy),
        )
        # Below-threshold models still serve as fallbacks, best accuracy first
        rest = sorted(
            (c for c in eligible if c not in qualified),
            key=lambda c: (-c.accuracy, c.cost_per_token),
        )
        return ordered + rest, degraded, threshold

    # ------------------------------------------------------------------ #
    # Selection
    # ------------------------------------------------------------------ #

    def select(
        self,
        service_level: ServiceLevel,
        candidates: list[ModelCandidate],
        request: RoutingRequest,
    ) -> Selection:
        """Pick the best candidate for the service level.

        Raises:
            NoEligibleModel: when no candidate passes the eligibility filter
        """
        eligible = self.eligible(candidates, service_level, request)
        if not eligible:
            raise NoEligibleModel(
                f"No eligible model for {service_level.value} request "
                f"{request.request_type!r}"
            )

        ordered, degraded, threshold = self.order(service_level, eligible)
        chosen = ordered[0]

        if service_level == ServiceLevel.CRITICAL:
            kind = DecisionKind.SELECTED_PRIMARY
            reason = (
                f"Highest accuracy model {chosen.provider}/{chosen.model} "
                f"({chosen.accuracy:g}%) for critical request"
            )
        else:
            kind = DecisionKind.COST_OPTIMIZATION
            reason = (
                f"Lowest cost model {chosen.provider}/{chosen.model} within "
                f"{self._settings.standard_accuracy_tolerance:g} points of best "
                f"accuracy (threshold {threshold:g}%)"
            )
            if degraded:
                reason += "; no model met the threshold, using best available"

        return self._build(service_level, kind, reason, ordered, request, degraded=degraded)

    def select_free_tier(
        self,
        candidates: list[ModelCandidate],
        request: RoutingRequest,
        *,
        exclude: tuple[str, str] | None = None,
    ) -> Selection:
        """Pick from the zero-cost pool by accuracy weighted by availability.

        The Critical accuracy floor does not apply here: the free pool is a
        last resort, not a Critical-grade route.

        Raises:
            NoEligibleModel: when the free pool has no usable model
        """
        pool = [
            c
            for c in candidates
            if c.free_tier
            and (exclude is None or (c.provider, c.model) != exclude)
            and self.is_eligible(c, ServiceLevel.STANDARD, request)
        ]
        if not pool:
            raise NoEligibleModel("No free-tier model is available")

        ordered = sorted(pool, key=lambda c: -(c.accuracy * c.availability / 100))
        chosen = ordered[0]
        reason = (
            f"Free-tier fallback to {chosen.provider}/{chosen.model} "
            f"(accuracy {chosen.accuracy:g}%, availability {chosen.availability:g}%)"
        )
        return self._build(
            request.service_level,
            DecisionKind.FREE_TIER_FALLBACK,
            reason,
            ordered,
            request,
        )

    def _build(
        self,
        service_level: ServiceLevel,
        kind: DecisionKind,
        reason: str,
        ordered: list[ModelCandidate],
        request: RoutingRequest,
        *,
        degraded: bool = False,
    ) -> Selection:
        chosen = ordered[0]
        alternatives = [
            {
                "provider": c.provider,
                "model": c.model,
                "score": 100 - (rank + 1) * 10,
                "reason": "Second choice" if rank == 0 else f"Alternative {rank + 1}",
            }
            for rank, c in enumerate(ordered[1 : 1 + MAX_ALTERNATIVES])
        ]
        selection = Selection(
            candidate=chosen,
            service_level=service_level,
            decision_kind=kind,
            reason=reason,
            estimated_cost=self.estimate_cost(request, chosen),
            alternatives=alternatives,
            fallback=ordered[1] if len(ordered) > 1 else None,
            fallback_options=ordered[1 : 1 + MAX_FALLBACK_OPTIONS],
            degraded=degraded,
        )
        log.debug(
            "selector.selected",
            service_level=service_level.value,
            provider=chosen.provider,
            model=chosen.model,
            decision_kind=kind.value,
            candidates=len(ordered),
        )
        return selection

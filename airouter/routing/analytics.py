"""Routing analytics over a window of ledger decisions."""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any

from airouter.routing.classifier import ServiceLevel
from airouter.routing.decision import DecisionStatus, RoutingDecision


@dataclass
class RoutingAnalytics:
    """Aggregate view of routing decisions.

    Attributes:
        total_requests: Decisions in the window
        success_rate: Completed / total (0.0 when empty)
        avg_cost: Mean actual cost of completed decisions (USD)
        avg_latency_ms: Mean processing duration of completed decisions
        provider_distribution: Decisions per provider
        decision_kind_distribution: Decisions per decision kind
        critical_accuracy: Mean model accuracy of completed Critical decisions
        standard_cost_efficiency: Mean cost efficiency of completed Standard decisions
        quota_utilization_by_provider: Percent of today's quota used per provider
    """

    total_requests: int = 0
    success_rate: float = 0.0
    avg_cost: float = 0.0
    avg_latency_ms: float = 0.0
    provider_distribution: dict[str, int] = field(default_factory=dict)
    decision_kind_distribution: dict[str, int] = field(default_factory=dict)
    critical_accuracy: float | None = None
    standard_cost_efficiency: float | None = None
    quota_utilization_by_provider: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _mean(values: list[float]) -> float | None:
    return sum(values) / len(values) if values else None


def build_analytics(
    decisions: list[RoutingDecision],
    quota_utilization: dict[str, float] | None = None,
) -> RoutingAnalytics:
    completed = [d for d in decisions if d.status == DecisionStatus.COMPLETED]
    total = len(decisions)

    critical = [
        d.model_accuracy
        for d in completed
        if d.service_level == ServiceLevel.CRITICAL.value and d.model_accuracy is not None
    ]
    efficiency = [
        d.cost_efficiency
        for d in completed
        if d.service_level == ServiceLevel.STANDARD.value and d.cost_efficiency is not None
    ]

    return RoutingAnalytics(
        total_requests=total,
        success_rate=round(len(completed) / total, 4) if total else 0.0,
        avg_cost=_mean([d.actual_cost or 0.0 for d in completed]) or 0.0,
        avg_latency_ms=_mean([float(d.processing_duration_ms or 0) for d in completed]) or 0.0,
        provider_distribution=dict(Counter(d.provider for d in decisions if d.provider)),
        decision_kind_distribution=dict(Counter(d.decision_kind.value for d in decisions)),
        critical_accuracy=_mean(critical),
        standard_cost_efficiency=_mean(efficiency),
        quota_utilization_by_provider=dict(quota_utilization or {}),
    )

"""Tests for the pure model selection policy."""

from __future__ import annotations

import pytest

from airouter.exceptions import NoEligibleModel
from airouter.routing.catalog import ModelDescriptor, is_usable_credential
from airouter.routing.classifier import RoutingRequest, ServiceLevel
from airouter.routing.decision import DecisionKind
from airouter.routing.selector import ModelCandidate, ModelSelector


def _candidate(
    provider: str,
    model: str,
    *,
    accuracy: float,
    cost: float,
    quota: int = 1_000_000,
    credential: str | None = "sk-real-key",
    region: str | None = None,
    availability: float = 100,
    free_tier: bool = False,
) -> ModelCandidate:
    descriptor = ModelDescriptor(
        provider_id=provider,
        model_id=model,
        endpoint=f"https://{provider}.example/v1",
        credential_ref=None if free_tier and credential is None else f"{provider.upper()}_API_KEY",
        cost_per_token=cost,
        accuracy=accuracy,
        max_tokens=100_000,
        availability=availability,
        region=region,
    )
    return ModelCandidate(descriptor, credential, quota, free_tier=free_tier)


@pytest.fixture
def selector(fake_settings) -> ModelSelector:
    return ModelSelector(fake_settings)


@pytest.fixture
def pool() -> list[ModelCandidate]:
    return [
        _candidate("openai", "gpt-4-turbo", accuracy=95, cost=0.00003),
        _candidate("openai", "gpt-4o", accuracy=93, cost=0.000015),
        _candidate("anthropic", "claude-3-opus", accuracy=96, cost=0.000075),
        _candidate("anthropic", "claude-3-sonnet", accuracy=92, cost=0.000015),
        _candidate("openrouter", "llama-3.1-70b", accuracy=85, cost=0.000004),
    ]


class TestCredentials:
    @pytest.mark.parametrize("value", [None, "", "demo_key", "  CHANGEME ", "your-api-key"])
    def test_placeholders_are_unusable(self, value):
        assert not is_usable_credential(value)

    def test_real_key_is_usable(self):
        assert is_usable_credential("sk-live-abc")


class TestCritical:
    def test_highest_accuracy_wins(self, selector, pool):
        selection = selector.select(ServiceLevel.CRITICAL, pool, RoutingRequest("symptom_analysis"))
        assert selection.candidate.model == "claude-3-opus"
        assert selection.decision_kind == DecisionKind.SELECTED_PRIMARY
        assert selection.fallback is not None
        assert selection.fallback.model == "gpt-4-turbo"

    def test_cost_breaks_accuracy_ties(self, selector):
        pool = [
            _candidate("a", "pricey", accuracy=97, cost=0.0001),
            _candidate("b", "cheap", accuracy=97, cost=0.00001),
        ]
        selection = selector.select(ServiceLevel.CRITICAL, pool, RoutingRequest("symptom_analysis"))
        assert selection.candidate.model == "cheap"

    def test_accuracy_floor_excludes_models(self, selector, pool):
        eligible = selector.eligible(pool, ServiceLevel.CRITICAL, RoutingRequest("symptom_analysis"))
        assert {c.model for c in eligible} == {"claude-3-opus", "gpt-4-turbo"}

    def test_missing_credential_disqualifies(self, selector):
        pool = [
            _candidate("anthropic", "claude-3-opus", accuracy=96, cost=0.000075, credential="demo_key"),
            _candidate("openai", "gpt-4-turbo", accuracy=95, cost=0.00003),
        ]
        selection = selector.select(ServiceLevel.CRITICAL, pool, RoutingRequest("symptom_analysis"))
        assert selection.candidate.model == "gpt-4-turbo"

    def test_no_eligible_model(self, selector):
        pool = [_candidate("openrouter", "llama", accuracy=85, cost=0.000004)]
        with pytest.raises(NoEligibleModel):
            selector.select(ServiceLevel.CRITICAL, pool, RoutingRequest("symptom_analysis"))


class TestStandard:
    def test_cheapest_within_tolerance(self, selector, pool):
        """Best accuracy 96 gives threshold 91; cheapest qualified is gpt-4o."""
        selection = selector.select(ServiceLevel.STANDARD, pool, RoutingRequest("general_chat"))
        assert selection.candidate.model == "gpt-4o"
        assert selection.decision_kind == DecisionKind.COST_OPTIMIZATION
        assert "threshold 91%" in selection.reason
        assert not selection.degraded

    def test_selected_accuracy_within_five_points_of_best(self, selector, pool):
        selection = selector.select(ServiceLevel.STANDARD, pool, RoutingRequest("general_chat"))
        best = max(c.accuracy for c in pool)
        assert selection.candidate.accuracy >= best - 5

    def test_zero_cost_model_preferred_within_tolerance(self, selector):
        pool = [
            _candidate("openrouter", "mixtral", accuracy=87, cost=0.000006),
            _candidate("local", "free-model", accuracy=84, cost=0.0, free_tier=True, credential=None),
        ]
        selection = selector.select(ServiceLevel.STANDARD, pool, RoutingRequest("general_chat"))
        assert selection.candidate.model == "free-model"

    def test_below_threshold_models_kept_as_fallbacks(self, selector, pool):
        selection = selector.select(ServiceLevel.STANDARD, pool, RoutingRequest("general_chat"))
        ordered = selector.order(
            ServiceLevel.STANDARD,
            selector.eligible(pool, ServiceLevel.STANDARD, RoutingRequest("general_chat")),
        )[0]
        assert ordered[-1].model == "llama-3.1-70b"
        assert selection.fallback is not None
        assert selection.fallback.model == "claude-3-sonnet"

    def test_region_constraint(self, selector):
        pool = [
            _candidate("eu", "eu-model", accuracy=90, cost=0.00002, region="eu"),
            _candidate("us", "us-model", accuracy=90, cost=0.00001, region="us"),
        ]
        request = RoutingRequest("general_chat", user_region="eu")
        selection = selector.select(ServiceLevel.STANDARD, pool, request)
        assert selection.candidate.model == "eu-model"

    def test_accuracy_requirement(self, selector, pool):
        request = RoutingRequest("general_chat", accuracy_requirement=95)
        selection = selector.select(ServiceLevel.STANDARD, pool, request)
        assert selection.candidate.model == "gpt-4-turbo"


class TestQuotaEligibility:
    def test_exhausted_quota_disqualifies(self, selector):
        pool = [
            _candidate("anthropic", "claude-3-opus", accuracy=96, cost=0.000075, quota=0),
            _candidate("openai", "gpt-4-turbo", accuracy=95, cost=0.00003),
        ]
        selection = selector.select(ServiceLevel.CRITICAL, pool, RoutingRequest("symptom_analysis"))
        assert selection.candidate.provider == "openai"

    def test_quota_below_token_estimate_disqualifies(self, selector):
        request = RoutingRequest("symptom_analysis", context_tokens=10, max_response_tokens=10)
        pool = [
            _candidate("anthropic", "claude-3-opus", accuracy=96, cost=0.000075, quota=19),
            _candidate("openai", "gpt-4-turbo", accuracy=95, cost=0.00003, quota=20),
        ]
        selection = selector.select(ServiceLevel.CRITICAL, pool, request)
        assert selection.candidate.provider == "openai"


class TestEstimatesAndAlternatives:
    def test_cost_estimate_uses_default_token_sizes(self, selector, pool):
        selection = selector.select(ServiceLevel.CRITICAL, pool, RoutingRequest("symptom_analysis"))
        assert selection.estimated_cost == pytest.approx(2000 * 0.000075)

    def test_cost_estimate_uses_request_sizes(self, selector, pool):
        request = RoutingRequest("symptom_analysis", context_tokens=300, max_response_tokens=200)
        selection = selector.select(ServiceLevel.CRITICAL, pool, request)
        assert selection.estimated_cost == pytest.approx(500 * 0.000075)

    def test_alternatives_have_decaying_scores(self, selector, pool):
        selection = selector.select(ServiceLevel.STANDARD, pool, RoutingRequest("general_chat"))
        assert [a["score"] for a in selection.alternatives] == [90, 80, 70]
        assert selection.alternatives[0]["reason"] == "Second choice"
        assert len(selection.fallback_options) == 2
        assert selection.fallback_options[0] is selection.fallback


class TestFreeTier:
    def test_ranked_by_accuracy_times_availability(self, selector):
        pool = [
            _candidate("huggingface", "mixtral-8x7b", accuracy=80, cost=0.0, availability=90, free_tier=True),
            _candidate("ollama", "llama3.1:8b", accuracy=75, cost=0.0, availability=95, free_tier=True, credential=None),
            _candidate("openai", "gpt-4o", accuracy=93, cost=0.000015),
        ]
        selection = selector.select_free_tier(pool, RoutingRequest("general_chat"))
        assert selection.candidate.provider == "huggingface"
        assert selection.decision_kind == DecisionKind.FREE_TIER_FALLBACK
        assert selection.estimated_cost == 0.0

    def test_exclude_skips_a_model(self, selector):
        pool = [
            _candidate("huggingface", "mixtral-8x7b", accuracy=80, cost=0.0, availability=90, free_tier=True),
            _candidate("ollama", "llama3.1:8b", accuracy=75, cost=0.0, availability=95, free_tier=True, credential=None),
        ]
        selection = selector.select_free_tier(
            pool, RoutingRequest("general_chat"), exclude=("huggingface", "mixtral-8x7b")
        )
        assert selection.candidate.provider == "ollama"

    def test_empty_free_pool(self, selector, pool):
        with pytest.raises(NoEligibleModel):
            selector.select_free_tier(pool, RoutingRequest("general_chat"))

"""Tests for daily quota tracking and the step-down ladder."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import patch

import pytest

from airouter.exceptions import NoEligibleModel, QuotaExhausted, StateStoreError
from airouter.routing.catalog import ProviderCatalog, StaticCredentialProvider
from airouter.routing.classifier import RoutingRequest, ServiceLevel
from airouter.routing.decision import DecisionKind
from airouter.routing.quota import QuotaAwareSelector, QuotaLedger, next_utc_midnight
from airouter.routing.selector import ModelSelector
from airouter.state import InMemoryStateStore


@pytest.fixture
def quota(store, clock) -> QuotaLedger:
    return QuotaLedger(store, clock=clock)


def _selector(catalog, quota, settings, credentials, clock) -> QuotaAwareSelector:
    return QuotaAwareSelector(
        catalog,
        quota,
        ModelSelector(settings),
        credentials,
        settings,
        clock=clock,
    )


@pytest.fixture
def quota_selector(catalog, quota, fake_settings, credentials, clock) -> QuotaAwareSelector:
    return _selector(catalog, quota, fake_settings, credentials, clock)


def _small_catalog() -> ProviderCatalog:
    """anthropic has a 100-token daily quota; openai is roomy."""
    return ProviderCatalog.from_dict(
        {
            "providers": [
                {
                    "provider_id": "anthropic",
                    "daily_quota": 100,
                    "models": [
                        {
                            "model_id": "claude-3-opus",
                            "endpoint": "https://api.anthropic.com/v1/messages",
                            "credential_ref": "ANTHROPIC_API_KEY",
                            "cost_per_token": 0.000075,
                            "accuracy": 96,
                            "max_tokens": 200000,
                        }
                    ],
                },
                {
                    "provider_id": "openai",
                    "daily_quota": 10000,
                    "models": [
                        {
                            "model_id": "gpt-4-turbo",
                            "endpoint": "https://api.openai.com/v1/chat/completions",
                            "credential_ref": "OPENAI_API_KEY",
                            "cost_per_token": 0.00003,
                            "accuracy": 95,
                            "max_tokens": 128000,
                        }
                    ],
                },
            ]
        }
    )


# ---------------------------------------------------------------------------
# QuotaLedger
# ---------------------------------------------------------------------------


class TestQuotaLedger:
    @pytest.mark.asyncio
    async def test_record_usage_accumulates(self, quota, store):
        first = await quota.record_usage("openai", 1500)
        second = await quota.record_usage("openai", 500)
        assert first.ok and first.value == 1500
        assert second.value == 2000
        assert await quota.consumed("openai") == 2000
        assert await store.get("quota:2026-03-10:openai") == 2000

    @pytest.mark.asyncio
    async def test_negative_usage_rejected(self, quota):
        with pytest.raises(ValueError):
            await quota.record_usage("openai", -1)

    @pytest.mark.asyncio
    async def test_consumed_map_defaults_to_zero(self, quota):
        await quota.record_usage("openai", 10)
        assert await quota.consumed_map(["openai", "anthropic"]) == {"openai": 10, "anthropic": 0}

    def test_remaining_scales_with_percentage(self, catalog):
        openai = catalog.get("openai")
        assert QuotaLedger.remaining(openai, 1000) == 9000
        assert QuotaLedger.remaining(openai, 1000, 80) == 7000

    @pytest.mark.asyncio
    async def test_new_day_starts_from_zero(self, quota, clock):
        await quota.record_usage("openai", 700)
        clock.advance(hours=12)
        assert await quota.consumed("openai") == 0

    @pytest.mark.asyncio
    async def test_utilization(self, quota, catalog):
        await quota.record_usage("openai", 5000)
        utilization = await quota.utilization(catalog)
        assert utilization["openai"] == 50.0
        assert utilization["anthropic"] == 0.0

    @pytest.mark.asyncio
    async def test_purge_keeps_today(self, quota, store, clock):
        await quota.record_usage("openai", 100)
        clock.advance(days=1)
        await quota.record_usage("openai", 5)

        result = await quota.purge_stale()
        assert result.ok and result.value == 1
        assert await store.keys("quota:*") == ["quota:2026-03-11:openai"]
        assert await quota.consumed("openai") == 5

    @pytest.mark.asyncio
    async def test_reset_daily_quotas_is_purge(self, quota, clock):
        await quota.record_usage("anthropic", 100)
        clock.advance(days=1)
        assert (await quota.reset_daily_quotas()).value == 1

    @pytest.mark.asyncio
    async def test_store_failures_are_recoverable(self, clock):
        class Broken(InMemoryStateStore):
            async def get(self, key):
                raise StateStoreError("down")

            async def increment(self, key, amount=1, ttl=None):
                raise StateStoreError("down")

        broken = QuotaLedger(Broken(), clock=clock)
        assert await broken.consumed("openai") == 0
        result = await broken.record_usage("openai", 10)
        assert not result.ok
        assert result.error == "down"

    def test_next_utc_midnight(self, clock):
        assert next_utc_midnight(clock()) == datetime(2026, 3, 11, tzinfo=UTC)


# ---------------------------------------------------------------------------
# QuotaAwareSelector
# ---------------------------------------------------------------------------


class TestCriticalSelection:
    @pytest.mark.asyncio
    async def test_full_quota_selects_at_100_percent(self, quota_selector):
        selection = await quota_selector.select(RoutingRequest("health_consultation"))
        assert selection.candidate.model == "claude-3-opus"
        assert selection.step_down_percentage == 100
        assert selection.decision_kind == DecisionKind.SELECTED_PRIMARY

    @pytest.mark.asyncio
    async def test_first_tier_below_100_is_reported_as_step_down(
        self, catalog, quota, fake_settings, credentials, clock
    ):
        settings = fake_settings.model_copy(update={"quota_step_down_ladder": [90, 80]})
        qs = _selector(catalog, quota, settings, credentials, clock)

        selection = await qs.select(RoutingRequest("health_consultation"))

        assert selection.candidate.model == "claude-3-opus"
        assert selection.step_down_percentage == 90
        assert selection.decision_kind == DecisionKind.QUOTA_EXCEEDED_STEPDOWN
        assert "90%" in selection.reason

    @pytest.mark.asyncio
    async def test_nearly_exhausted_provider_is_skipped(
        self, quota, fake_settings, credentials, clock
    ):
        """95 of 100 tokens used: a 20-token request cannot use anthropic at any tier."""
        await quota.record_usage("anthropic", 95)
        qs = _selector(_small_catalog(), quota, fake_settings, credentials, clock)

        request = RoutingRequest("symptom_analysis", context_tokens=10, max_response_tokens=10)
        selection = await qs.select(request)
        assert selection.candidate.provider == "openai"
        assert selection.step_down_percentage == 100

    @pytest.mark.asyncio
    async def test_ladder_exhausted_raises_quota_exhausted(
        self, quota, fake_settings, credentials, clock
    ):
        await quota.record_usage("anthropic", 95)
        await quota.record_usage("openai", 9995)
        qs = _selector(_small_catalog(), quota, fake_settings, credentials, clock)
        request = RoutingRequest("symptom_analysis", context_tokens=10, max_response_tokens=10)

        with patch.object(qs._selector, "select", wraps=qs._selector.select) as spy:
            with pytest.raises(QuotaExhausted) as exc_info:
                await qs.select(request)

        assert spy.call_count == len(fake_settings.quota_step_down_ladder)
        assert exc_info.value.next_reset_at == datetime(2026, 3, 11, tzinfo=UTC)
        assert "2026-03-11" in exc_info.value.user_message()

    @pytest.mark.asyncio
    async def test_ordinary_critical_never_crosses_tiers(self, quota, quota_selector):
        await quota.record_usage("openai", 10_000)
        await quota.record_usage("anthropic", 8_000)
        with pytest.raises(QuotaExhausted):
            await quota_selector.select(RoutingRequest("medication_interaction"))

    @pytest.mark.asyncio
    async def test_no_credentials_is_not_a_quota_problem(
        self, catalog, quota, fake_settings, clock
    ):
        qs = _selector(catalog, quota, fake_settings, StaticCredentialProvider({}), clock)
        with pytest.raises(NoEligibleModel):
            await qs.select(RoutingRequest("health_consultation"))


class TestEmergency:
    @pytest.mark.asyncio
    async def test_emergency_uses_critical_logic(self, quota_selector):
        selection = await quota_selector.select(RoutingRequest("general_chat", emergency=True))
        assert selection.service_level == ServiceLevel.CRITICAL
        assert selection.candidate.model == "claude-3-opus"
        assert selection.decision_kind == DecisionKind.EMERGENCY_OVERRIDE
        assert selection.reason.startswith("Emergency override")

    @pytest.mark.asyncio
    async def test_emergency_falls_to_standard_after_full_ladder(self, quota, quota_selector):
        await quota.record_usage("openai", 10_000)
        await quota.record_usage("anthropic", 8_000)
        request = RoutingRequest("emergency_assessment", emergency=True)

        with patch.object(
            quota_selector._selector, "select", wraps=quota_selector._selector.select
        ) as spy:
            selection = await quota_selector.select(request)

        levels = [c.args[0] for c in spy.call_args_list]
        assert levels == [ServiceLevel.CRITICAL] * 5 + [ServiceLevel.STANDARD]
        assert selection.decision_kind == DecisionKind.EMERGENCY_OVERRIDE
        assert selection.candidate.provider == "openrouter"
        assert selection.candidate.model == "llama-3.1-70b"
        assert "standard tier" in selection.reason

    @pytest.mark.asyncio
    async def test_emergency_without_critical_credentials_uses_standard_tier(
        self, catalog, quota, fake_settings, clock
    ):
        credentials = StaticCredentialProvider({"OPENROUTER_API_KEY": "sk-or-test-0123456789"})
        qs = _selector(catalog, quota, fake_settings, credentials, clock)

        selection = await qs.select(RoutingRequest("emergency_assessment", emergency=True))

        assert selection.decision_kind == DecisionKind.EMERGENCY_OVERRIDE
        assert selection.candidate.provider == "openrouter"
        assert selection.candidate.credential == "sk-or-test-0123456789"
        assert "standard tier" in selection.reason

    @pytest.mark.asyncio
    async def test_emergency_with_no_usable_model_is_not_a_quota_problem(
        self, catalog, quota, fake_settings, clock
    ):
        paid_only = ProviderCatalog(catalog.paid_profiles())
        qs = _selector(paid_only, quota, fake_settings, StaticCredentialProvider({}), clock)
        with pytest.raises(NoEligibleModel):
            await qs.select(RoutingRequest("emergency_assessment", emergency=True))


class TestStandardSelection:
    @pytest.mark.asyncio
    async def test_standard_is_cost_optimised(self, quota_selector):
        selection = await quota_selector.select(RoutingRequest("recipe_generation"))
        assert selection.candidate.model == "gpt-4o"
        assert selection.step_down_percentage is None

    @pytest.mark.asyncio
    async def test_paid_pool_exhausted_uses_zero_cost_models(self, quota, quota_selector):
        await quota.record_usage("openai", 10_000)
        await quota.record_usage("anthropic", 8_000)
        await quota.record_usage("openrouter", 50_000)

        selection = await quota_selector.select(RoutingRequest("recipe_generation"))
        assert selection.candidate.provider == "huggingface"
        assert selection.estimated_cost == 0.0

    @pytest.mark.asyncio
    async def test_everything_exhausted(self, quota, quota_selector):
        for provider, used in (
            ("openai", 10_000),
            ("anthropic", 8_000),
            ("openrouter", 50_000),
            ("huggingface", 10_000),
            ("ollama", 50_000),
        ):
            await quota.record_usage(provider, used)
        with pytest.raises(QuotaExhausted):
            await quota_selector.select(RoutingRequest("recipe_generation"))


class TestFreeTier:
    @pytest.mark.asyncio
    async def test_prefer_free_tier(self, quota_selector):
        selection = await quota_selector.select(
            RoutingRequest("general_chat", prefer_free_tier=True)
        )
        assert selection.decision_kind == DecisionKind.FREE_TIER_FALLBACK
        assert selection.candidate.provider == "huggingface"

    @pytest.mark.asyncio
    async def test_free_tier_fallback_excludes_failed_model(self, quota_selector):
        selection = await quota_selector.free_tier_fallback(
            RoutingRequest("general_chat"),
            exclude=("huggingface", "mixtral-8x7b-instruct"),
        )
        assert selection.candidate.provider == "ollama"

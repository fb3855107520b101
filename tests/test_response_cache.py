"""Tests for the response cache.

Covers:
- key and similarity helpers
- exact hits, smart (similarity) hits and policy-gated misses
- sliding expiry and access metadata on hits
- statistics document, clear(), recency-bounded similarity scan
- backend failures reported as misses / failed StoreResults
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from airouter.cache import DEFAULT_POLICIES, CachePolicy, ResponseCache, cache_type_for
from airouter.cache.response_cache import jaccard, tokenize
from airouter.exceptions import StateStoreError
from airouter.state import InMemoryStateStore

MEAL_PROMPT = "Create a weekly vegetarian meal plan with high protein breakfast options"
META = {
    "provider": "openai",
    "model": "gpt-4o",
    "tokens_used": 1800,
    "cost": 0.027,
    "response_time_ms": 2400,
    "accuracy": 93,
    "user_tier": "premium",
}


@pytest.fixture
def cache(store, clock) -> ResponseCache:
    return ResponseCache(store, clock=clock)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_tokenize_normalises(self):
        """Lowercase, punctuation stripped, words of two chars or fewer dropped."""
        assert tokenize("Hi, an OAT-milk latte!") == {"oatmilk", "latte"}

    def test_jaccard(self):
        assert jaccard({"a", "b"}, {"a", "b"}) == 1.0
        assert jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
        assert jaccard(set(), set()) == 0.0

    def test_cache_key_ignores_context_key_order(self):
        k1 = ResponseCache.cache_key("chat_response", "hi", {"a": 1, "b": 2})
        k2 = ResponseCache.cache_key("chat_response", "hi", {"b": 2, "a": 1})
        assert k1 == k2
        assert k1.startswith("ai_cache:chat_response:")

    def test_cache_key_depends_on_context(self):
        k1 = ResponseCache.cache_key("chat_response", "hi", {"diet": "vegan"})
        k2 = ResponseCache.cache_key("chat_response", "hi", {"diet": "keto"})
        assert k1 != k2

    def test_request_types_map_to_cache_types(self):
        assert cache_type_for("meal_planning") == "meal_plan_generation"
        assert cache_type_for("general_chat") == "chat_response"
        assert cache_type_for("health_report_analysis") == "health_report_analysis"
        assert cache_type_for("goal_setting") == "goal_setting"

    def test_policy_validation(self):
        with pytest.raises(ValueError):
            CachePolicy(ttl=0)
        with pytest.raises(ValueError):
            CachePolicy(ttl=10, similarity_threshold=0)
        assert not CachePolicy(ttl=10, smart_matching=True).allows_similarity


# ---------------------------------------------------------------------------
# Lookup / store
# ---------------------------------------------------------------------------


class TestLookup:
    @pytest.mark.asyncio
    async def test_identical_request_hits(self, cache):
        ctx = {"diet": "vegetarian", "days": 7}
        result = await cache.store("meal_plan_generation", MEAL_PROMPT, ctx, {"plan": [1]}, META)
        assert result.ok

        hit = await cache.lookup("meal_plan_generation", MEAL_PROMPT, {"days": 7, "diet": "vegetarian"})
        assert hit.hit
        assert hit.response == {"plan": [1]}
        assert hit.similarity == 1.0
        assert hit.savings == {"tokens": 1800, "cost": 0.027, "response_time_ms": 2400}

    @pytest.mark.asyncio
    async def test_first_lookup_misses(self, cache):
        miss = await cache.lookup("meal_plan_generation", MEAL_PROMPT)
        assert not miss.hit
        assert miss.error is None

    @pytest.mark.asyncio
    async def test_case_and_punctuation_variation_hits_with_smart_matching(self, cache):
        await cache.store("meal_plan_generation", MEAL_PROMPT, None, "plan", META)
        varied = "CREATE a weekly vegetarian meal plan, with high protein breakfast options!!"

        hit = await cache.lookup("meal_plan_generation", varied)
        assert hit.hit
        assert hit.response == "plan"

    @pytest.mark.asyncio
    async def test_same_variation_misses_without_smart_matching(self, cache):
        await cache.store("chat_response", MEAL_PROMPT, None, "plan", META)
        varied = "CREATE a weekly vegetarian meal plan, with high protein breakfast options!!"

        miss = await cache.lookup("chat_response", varied)
        assert not miss.hit

    @pytest.mark.asyncio
    async def test_similarity_threshold_is_per_policy(self, cache):
        """One extra word: 10/11 overlap passes 0.85 but not 0.95."""
        near = MEAL_PROMPT + " please"
        await cache.store("meal_plan_generation", MEAL_PROMPT, None, "plan", META)
        await cache.store("nutrition_analysis", MEAL_PROMPT, None, "analysis", META)

        hit = await cache.lookup("meal_plan_generation", near)
        assert hit.hit
        assert hit.similarity == pytest.approx(10 / 11)
        assert not (await cache.lookup("nutrition_analysis", near)).hit

    @pytest.mark.asyncio
    async def test_type_without_policy_is_never_cached(self, cache):
        result = await cache.store("goal_setting", "set goals", None, "goals", META)
        assert not result.ok
        assert not (await cache.lookup("goal_setting", "set goals")).hit

    @pytest.mark.asyncio
    async def test_hit_refreshes_access_metadata_and_ttl(self, cache, store, clock):
        await cache.store("chat_response", "hello there", None, "hi", META)
        key = ResponseCache.cache_key("chat_response", "hello there", None)
        clock.advance(minutes=30)

        await cache.lookup("chat_response", "hello there")
        entry = await store.get(key)
        assert entry["access_count"] == 1
        assert entry["last_accessed"] == clock.now.isoformat()

        expire = AsyncMock(wraps=store.set)
        store.set = expire
        await cache.lookup("chat_response", "hello there")
        ttls = [c.kwargs.get("ttl") for c in expire.await_args_list if c.args[0] == key]
        assert ttls == [DEFAULT_POLICIES["chat_response"].ttl]

    @pytest.mark.asyncio
    async def test_store_persists_generation_metadata(self, cache, store):
        await cache.store("fitness_plan_generation", "5k plan", {"level": "new"}, "run", META)
        entry = await store.get(ResponseCache.cache_key("fitness_plan_generation", "5k plan", {"level": "new"}))
        assert entry["metadata"]["provider"] == "openai"
        assert entry["tags"] == ["fitness", "exercise"]
        assert entry["ttl"] == DEFAULT_POLICIES["fitness_plan_generation"].ttl
        assert entry["prompt_hash"] == ResponseCache.prompt_hash("5k plan", {"level": "new"})


class TestSimilarityScanBound:
    @pytest.mark.asyncio
    async def test_only_most_recent_entries_are_scanned(self, store, clock):
        cache = ResponseCache(store, scan_limit=1, clock=clock)
        await cache.store("meal_plan_generation", MEAL_PROMPT, None, "old", META)
        await cache.store("meal_plan_generation", "completely unrelated keto dinner ideas", None, "new", META)

        # The near-duplicate of the older entry falls outside the recency window
        miss = await cache.lookup("meal_plan_generation", MEAL_PROMPT + " please")
        assert not miss.hit
        # Exact matches are unaffected by the bound
        assert (await cache.lookup("meal_plan_generation", MEAL_PROMPT)).hit


# ---------------------------------------------------------------------------
# Stats / clear
# ---------------------------------------------------------------------------


class TestStatsAndClear:
    @pytest.mark.asyncio
    async def test_stats_track_hits_misses_and_savings(self, cache):
        await cache.store("chat_response", "hello there", None, "hi", META)
        await cache.lookup("chat_response", "hello there")
        await cache.lookup("chat_response", "something else")

        stats = await cache.stats()
        assert stats["total_entries"] == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["total_savings"]["tokens"] == 1800
        assert stats["by_type"]["chat_response"]["hits"] == 1

    @pytest.mark.asyncio
    async def test_clear_one_type(self, cache):
        await cache.store("chat_response", "hello there", None, "hi", META)
        await cache.store("meal_plan_generation", MEAL_PROMPT, None, "plan", META)

        assert await cache.clear("chat_response") == 1
        assert not (await cache.lookup("chat_response", "hello there")).hit
        assert (await cache.lookup("meal_plan_generation", MEAL_PROMPT)).hit

    @pytest.mark.asyncio
    async def test_entries_expire_with_policy_ttl(self, clock):
        ticks = {"now": 0.0}
        store = InMemoryStateStore(time_source=lambda: ticks["now"])
        cache = ResponseCache(store, clock=clock)
        await cache.store("chat_response", "hello there", None, "hi", META)

        ticks["now"] += timedelta(hours=1).total_seconds()
        assert not (await cache.lookup("chat_response", "hello there")).hit

    @pytest.mark.asyncio
    async def test_hit_keeps_smart_matching_alive_past_original_ttl(self, clock):
        ticks = {"now": 0.0}
        store = InMemoryStateStore(time_source=lambda: ticks["now"])
        cache = ResponseCache(store, clock=clock)
        varied = "CREATE a weekly vegetarian meal plan, with high protein breakfast options!!"
        await cache.store("meal_plan_generation", MEAL_PROMPT, None, "plan", META)

        ticks["now"] += timedelta(hours=23).total_seconds()
        assert (await cache.lookup("meal_plan_generation", MEAL_PROMPT)).hit

        ticks["now"] += timedelta(hours=2).total_seconds()
        hit = await cache.lookup("meal_plan_generation", varied)
        assert hit.hit
        assert hit.response == "plan"


# ---------------------------------------------------------------------------
# Backend failures
# ---------------------------------------------------------------------------


class TestBackendFailures:
    @pytest.fixture
    def broken(self) -> MagicMock:
        backend = MagicMock()
        for name in ("get", "set", "delete", "keys", "increment"):
            setattr(backend, name, AsyncMock(side_effect=StateStoreError("redis down")))
        return backend

    @pytest.mark.asyncio
    async def test_lookup_failure_is_a_miss(self, broken, clock):
        cache = ResponseCache(broken, clock=clock)
        result = await cache.lookup("chat_response", "hello")
        assert not result.hit
        assert result.error is not None and "redis down" in result.error

    @pytest.mark.asyncio
    async def test_store_failure_is_reported(self, broken, clock):
        cache = ResponseCache(broken, clock=clock)
        result = await cache.store("chat_response", "hello", None, "hi", META)
        assert not result.ok
        assert "redis down" in result.error

    @pytest.mark.asyncio
    async def test_stats_and_clear_degrade(self, broken, clock):
        cache = ResponseCache(broken, clock=clock)
        assert (await cache.stats())["hits"] == 0
        assert await cache.clear() == 0

"""Tests for periodic routing housekeeping."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from airouter.routing.classifier import RoutingRequest
from airouter.routing.decision import CompletionReport, DecisionStatus
from airouter.routing.maintenance import RoutingMaintenance


@pytest.fixture
def maintenance(router, fake_settings) -> RoutingMaintenance:
    return RoutingMaintenance(router.ledger, router.quota, fake_settings)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_open_decisions_time_out(self, router, maintenance, clock):
        route = await router.route(RoutingRequest("recipe_generation"))
        clock.advance(301)

        report = await maintenance.run_once()

        assert report.timed_out == 1
        decision = await router.get_decision(route.decision_id)
        assert decision.status == DecisionStatus.TIMEOUT

    @pytest.mark.asyncio
    async def test_recent_decisions_are_left_alone(self, router, maintenance, clock):
        route = await router.route(RoutingRequest("recipe_generation"))
        clock.advance(120)

        assert (await maintenance.run_once()).timed_out == 0
        assert (await router.get_decision(route.decision_id)).status == DecisionStatus.PENDING

    @pytest.mark.asyncio
    async def test_previous_day_quota_is_purged(self, router, maintenance, clock):
        await router.quota.record_usage("openai", 500)
        clock.advance(days=1)

        report = await maintenance.run_once()

        assert report.quota_keys_purged == 1
        assert report.quota_purge_ok

    @pytest.mark.asyncio
    async def test_timed_out_decision_cannot_complete(self, router, maintenance, clock):
        route = await router.route(RoutingRequest("recipe_generation"))
        clock.advance(301)
        await maintenance.run_once()

        assert not await router.report_completion(
            route.decision_id, CompletionReport(response_tokens=10)
        )
        assert await router.quota.consumed("openai") == 0


class TestLoop:
    @pytest.mark.asyncio
    async def test_run_forever_stops_on_event(self, maintenance):
        stop = asyncio.Event()
        maintenance.run_once = AsyncMock(side_effect=lambda: stop.set())

        await asyncio.wait_for(maintenance.run_forever(60, stop_event=stop), timeout=1)
        maintenance.run_once.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, maintenance):
        stop = asyncio.Event()
        calls = {"n": 0}

        async def flaky():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("database unavailable")
            stop.set()

        maintenance.run_once = flaky
        await asyncio.wait_for(maintenance.run_forever(0.01, stop_event=stop), timeout=1)
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, maintenance):
        ran = asyncio.Event()

        async def mark():
            ran.set()

        maintenance.run_once = mark
        maintenance.start(60)
        await asyncio.wait_for(ran.wait(), timeout=1)
        await maintenance.shutdown()
        assert maintenance._task is None

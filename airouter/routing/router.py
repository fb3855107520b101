"""Router - the single entry point for routing generation requests.

route() runs, in order:
1. classify the request into Critical / Standard
2. Critical only: atomic admission through the per-user rate limiter
3. response cache lookup (when the caller supplied a prompt)
4. quota-aware model selection (free tier, step-down ladder, or standard)
5. record a PENDING decision in the ledger

Provider calls happen outside the router. The caller reports back through
report_completion() / report_failure(), which settle the decision, charge
the provider's daily quota and populate the response cache.

Admission denials and quota exhaustion are recorded as FAILED decisions
and raised synchronously. Cache hits return ``cached=True`` and do not
create a ledger entry: no provider is called, so there is nothing to
settle.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from airouter.cache import ResponseCache, cache_type_for
from airouter.config import Settings, get_settings
from airouter.exceptions import (
    DecisionNotFound,
    NoEligibleModel,
    QuotaExhausted,
    StateStoreError,
)
from airouter.routing.analytics import RoutingAnalytics, build_analytics
from airouter.routing.catalog import (
    CredentialProvider,
    ProviderCatalog,
    SettingsCredentialProvider,
)
from airouter.routing.classifier import RoutingRequest, ServiceLevel
from airouter.routing.decision import (
    CompletionReport,
    DecisionKind,
    DecisionStatus,
    RoutingDecision,
)
from airouter.routing.ledger import DecisionLedger
from airouter.routing.quota import QuotaAwareSelector, QuotaLedger
from airouter.routing.rate_limit import CriticalRateLimiter, RateLimitStatus
from airouter.routing.selector import ModelCandidate, ModelSelector, Selection
from airouter.state import StateStore, StoreResult, get_state_store
from airouter.telemetry import (
    bind_decision_context,
    bind_request_context,
    bind_user_context,
)

log = structlog.get_logger(__name__)

_PROMPT_NS = "route_prompt"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class CallTarget:
    """Where (and with which credential) a provider call should go."""

    provider: str
    model: str
    endpoint: str
    credential: str | None = field(default=None, repr=False)

    @classmethod
    def from_candidate(cls, candidate: ModelCandidate) -> CallTarget:
        return cls(
            provider=candidate.provider,
            model=candidate.model,
            endpoint=candidate.endpoint,
            credential=candidate.credential,
        )


@dataclass
class RouteResult:
    """What the caller needs to make (or skip) the provider call."""

    request_type: str
    service_level: ServiceLevel
    provider: str | None
    model: str | None
    endpoint: str | None
    decision_id: str | None
    decision_kind: DecisionKind | None
    routing_reason: str
    estimated_cost: float = 0.0
    estimated_tokens: int = 0
    quota_remaining: int | None = None
    credential: str | None = field(default=None, repr=False)
    fallback: CallTarget | None = None
    fallback_options: list[dict[str, str]] = field(default_factory=list)
    step_down_percentage: int | None = None
    cached: bool = False
    cached_response: Any = None
    cache_savings: dict[str, float] = field(default_factory=dict)

    @property
    def target(self) -> CallTarget:
        if self.provider is None or self.model is None or self.endpoint is None:
            raise ValueError("cached results have no call target")
        return CallTarget(self.provider, self.model, self.endpoint, self.credential)


class Router:
    """Admission control, caching and model selection for AI requests.

    Args:
        settings: Routing configuration
        store: Shared state store (quota, rate windows, cache)
        ledger: Decision ledger
        catalog: Provider catalog (defaults to the settings-derived catalog)
        credentials: Credential lookup (defaults to settings)
        clock: UTC clock shared by every time-dependent component
    """

    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        ledger: DecisionLedger,
        *,
        catalog: ProviderCatalog | None = None,
        credentials: CredentialProvider | None = None,
        cache: ResponseCache | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._store = store
        self._ledger = ledger
        self._clock = clock
        self.catalog = catalog or ProviderCatalog.from_settings(settings)
        self.rate_limiter = CriticalRateLimiter(store, settings, clock=clock)
        self.quota = QuotaLedger(store, clock=clock)
        self.selector = ModelSelector(settings)
        self.quota_selector = QuotaAwareSelector(
            self.catalog,
            self.quota,
            self.selector,
            credentials or SettingsCredentialProvider(settings),
            settings,
            clock=clock,
        )
        self.cache = cache or ResponseCache(
            store,
            scan_limit=settings.cache_similarity_scan_limit,
            clock=clock,
        )
        log.info(
            "router.initialized",
            providers=[p.provider_id for p in self.catalog.providers],
            ladder=settings.quota_step_down_ladder,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        ledger: DecisionLedger | None = None,
    ) -> Router:
        """Build a router with the configured store and the SQL ledger.

        The database must already be initialised (airouter.database.init_db)
        unless a ledger is passed in.
        """
        from airouter.database import get_session_factory
        from airouter.routing.ledger import SqlDecisionLedger

        cfg = settings or get_settings()
        return cls(
            cfg,
            get_state_store(cfg),
            ledger or SqlDecisionLedger(get_session_factory()),
        )

    @property
    def ledger(self) -> DecisionLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def route(self, request: RoutingRequest) -> RouteResult:
        """Route one request.

        Raises:
            AdmissionDenied: Critical request refused by the rate limiter
            QuotaExhausted: no provider has quota left at any ladder step
            NoEligibleModel: no configured model qualifies for the request
        """
        bind_request_context(request.request_id)
        bind_user_context(request.user_id)
        nominal_level = request.service_level

        if nominal_level == ServiceLevel.CRITICAL:
            admission = await self.rate_limiter.admit(request.user_id)
            if not admission.allowed:
                decision = await self._record_rejection(
                    request,
                    DecisionKind.RATE_LIMITED,
                    "ADMISSION_DENIED",
                    f"Critical rate limit: {admission.violated_rule}",
                    rate_limit_hit=True,
                )
                raise admission.to_exception(decision.id)

        if request.prompt is not None:
            cached = await self._lookup_cache(request)
            if cached is not None:
                return cached

        try:
            selection = await self.quota_selector.select(request)
        except QuotaExhausted as exc:
            decision = await self._record_rejection(
                request, DecisionKind.QUOTA_EXCEEDED, exc.error_code, str(exc)
            )
            exc.decision_id = decision.id
            raise
        except NoEligibleModel as exc:
            await self._record_rejection(
                request, DecisionKind.MODEL_UNAVAILABLE, exc.error_code, str(exc)
            )
            raise

        decision = self._new_decision(request, selection)
        await self._ledger.add(decision)
        bind_decision_context(decision.id, request.request_type, decision.service_level)
        await self._remember_prompt(decision.id, request)

        candidate = selection.candidate
        log.info(
            "router.route_selected",
            provider=candidate.provider,
            model=candidate.model,
            decision_kind=selection.decision_kind.value,
            step_down_percentage=selection.step_down_percentage,
            estimated_cost=round(selection.estimated_cost, 6),
        )
        return RouteResult(
            request_type=request.request_type,
            service_level=selection.service_level,
            provider=candidate.provider,
            model=candidate.model,
            endpoint=candidate.endpoint,
            credential=candidate.credential,
            decision_id=decision.id,
            decision_kind=selection.decision_kind,
            routing_reason=selection.reason,
            estimated_cost=selection.estimated_cost,
            estimated_tokens=self.selector.token_estimate(request),
            quota_remaining=candidate.quota_remaining,
            fallback=CallTarget.from_candidate(selection.fallback) if selection.fallback else None,
            fallback_options=[c.as_option() for c in selection.fallback_options],
            step_down_percentage=selection.step_down_percentage,
        )

    async def free_tier_target(self, route: RouteResult) -> CallTarget | None:
        """Best free-tier model other than the one the route already uses."""
        exclude = (route.provider, route.model) if route.provider and route.model else None
        try:
            selection = await self.quota_selector.free_tier_fallback(
                RoutingRequest(request_type=route.request_type),
                exclude=exclude,  # type: ignore[arg-type]
            )
        except NoEligibleModel:
            return None
        return CallTarget.from_candidate(selection.candidate)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    async def mark_processing(self, decision_id: str) -> bool:
        return await self._settle(decision_id, self._ledger.start(decision_id), "processing")

    async def record_retry(
        self,
        decision_id: str,
        error_code: str,
        error_message: str,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> bool:
        return await self._settle(
            decision_id,
            self._ledger.record_retry(
                decision_id, error_code, error_message, provider=provider, model=model
            ),
            "retry",
        )

    async def report_completion(self, decision_id: str, report: CompletionReport) -> bool:
        """Settle a successful call.

        Only the first completion for a decision charges quota and fills
        the cache; duplicates are logged and ignored.

        Returns:
            True if this call completed the decision
        """
        try:
            decision = await self._ledger.complete(decision_id, report)
        except DecisionNotFound:
            log.warning("router.unknown_decision", decision_id=decision_id, callback="completion")
            return False
        if decision is None:
            log.info("router.duplicate_completion", decision_id=decision_id)
            return False

        if decision.provider:
            profile = self.catalog.get(decision.provider)
            await self.quota.record_usage(
                decision.provider,
                decision.total_tokens or 0,
                daily_quota=profile.daily_quota if profile else None,
            )

        if report.response is not None:
            await self._populate_cache(decision, report)
        await self._forget_prompt(decision_id)

        log.info(
            "router.completed",
            decision_id=decision_id,
            provider=decision.provider,
            total_tokens=decision.total_tokens,
            actual_cost=decision.actual_cost,
        )
        return True

    async def report_failure(self, decision_id: str, error_code: str, error_message: str) -> bool:
        ok = await self._settle(
            decision_id,
            self._ledger.fail(decision_id, error_code, error_message),
            "failure",
        )
        if ok:
            await self._forget_prompt(decision_id)
            log.warning("router.failed", decision_id=decision_id, error_code=error_code)
        return ok

    async def cancel(self, decision_id: str) -> bool:
        ok = await self._settle(decision_id, self._ledger.cancel(decision_id), "cancel")
        if ok:
            await self._forget_prompt(decision_id)
        return ok

    async def get_decision(self, decision_id: str) -> RoutingDecision:
        return await self._ledger.get(decision_id)

    # ------------------------------------------------------------------
    # Reporting & maintenance
    # ------------------------------------------------------------------

    async def get_analytics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> RoutingAnalytics:
        """Aggregate decisions created in [start, end); defaults to the last 24h."""
        end = end or self._clock()
        start = start or end - timedelta(days=1)
        decisions = await self._ledger.between(start, end)
        utilization = await self.quota.utilization(self.catalog)
        return build_analytics(decisions, utilization)

    async def reset_daily_quotas(self) -> StoreResult:
        return await self.quota.reset_daily_quotas()

    async def rate_limit_status(self, user_id: str | None) -> RateLimitStatus:
        return await self.rate_limiter.status(user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _settle(self, decision_id: str, transition: Any, callback: str) -> bool:
        try:
            decision = await transition
        except DecisionNotFound:
            log.warning("router.unknown_decision", decision_id=decision_id, callback=callback)
            return False
        return decision is not None

    def _base_decision(self, request: RoutingRequest, **values: Any) -> RoutingDecision:
        level = ServiceLevel.CRITICAL if request.emergency else request.service_level
        return RoutingDecision(
            request_type=request.request_type,
            service_level=level.value,
            request_id=request.request_id,
            user_id=request.user_id,
            session_id=request.session_id,
            context_tokens=request.context_tokens or self._settings.default_context_tokens,
            max_response_tokens=(
                request.max_response_tokens or self._settings.default_max_response_tokens
            ),
            emergency=request.emergency,
            user_tier=request.user_tier,
            user_region=request.user_region,
            metadata=dict(request.metadata),
            created_at=self._clock(),
            **values,
        )

    def _new_decision(self, request: RoutingRequest, selection: Selection) -> RoutingDecision:
        candidate = selection.candidate
        decision = self._base_decision(
            request,
            provider=candidate.provider,
            model=candidate.model,
            endpoint=candidate.endpoint,
            decision_kind=selection.decision_kind,
            routing_reason=selection.reason,
            step_down_percentage=selection.step_down_percentage,
            alternatives=selection.alternatives,
            fallback_provider=selection.fallback.provider if selection.fallback else None,
            fallback_model=selection.fallback.model if selection.fallback else None,
            estimated_cost=selection.estimated_cost,
            quota_remaining=candidate.quota_remaining,
            model_accuracy=candidate.accuracy,
        )
        decision.service_level = selection.service_level.value
        if selection.degraded:
            decision.metadata["degraded_selection"] = True
        return decision

    async def _record_rejection(
        self,
        request: RoutingRequest,
        kind: DecisionKind,
        error_code: str,
        message: str,
        *,
        rate_limit_hit: bool = False,
    ) -> RoutingDecision:
        now = self._clock()
        decision = self._base_decision(
            request,
            provider=None,
            model=None,
            decision_kind=kind,
            routing_reason=message,
            status=DecisionStatus.FAILED,
            completed_at=now,
            error_code=error_code,
            error_message=message,
            rate_limit_hit=rate_limit_hit,
        )
        await self._ledger.add(decision)
        log.warning(
            "router.rejected",
            decision_id=decision.id,
            request_type=request.request_type,
            error_code=error_code,
        )
        return decision

    async def _lookup_cache(self, request: RoutingRequest) -> RouteResult | None:
        lookup = await self.cache.lookup(
            cache_type_for(request.request_type), request.prompt or "", request.context
        )
        if not lookup.hit:
            return None
        return RouteResult(
            request_type=request.request_type,
            service_level=request.service_level,
            provider=lookup.metadata.get("provider"),
            model=lookup.metadata.get("model"),
            endpoint=None,
            decision_id=None,
            decision_kind=None,
            routing_reason="Served from response cache",
            cached=True,
            cached_response=lookup.response,
            cache_savings=lookup.savings,
        )

    async def _remember_prompt(self, decision_id: str, request: RoutingRequest) -> None:
        if request.prompt is None:
            return
        cache_type = cache_type_for(request.request_type)
        if self.cache.policy_for(cache_type) is None:
            return
        shape = {
            "cache_type": cache_type,
            "prompt": request.prompt,
            "context": request.context,
            "user_tier": request.user_tier,
        }
        try:
            await self._store.set(
                f"{_PROMPT_NS}:{decision_id}",
                shape,
                ttl=self._settings.decision_timeout_seconds * 2,
            )
        except StateStoreError as exc:
            log.warning("router.prompt_store_failed", decision_id=decision_id, error=str(exc))

    async def _forget_prompt(self, decision_id: str) -> None:
        try:
            await self._store.delete(f"{_PROMPT_NS}:{decision_id}")
        except StateStoreError as exc:
            log.warning("router.prompt_delete_failed", decision_id=decision_id, error=str(exc))

    async def _populate_cache(self, decision: RoutingDecision, report: CompletionReport) -> None:
        try:
            shape = await self._store.get(f"{_PROMPT_NS}:{decision.id}")
        except StateStoreError as exc:
            log.warning("router.prompt_read_failed", decision_id=decision.id, error=str(exc))
            return
        if not shape:
            return
        await self.cache.store(
            shape["cache_type"],
            shape["prompt"],
            shape.get("context"),
            report.response,
            {
                "provider": decision.provider,
                "model": decision.model,
                "tokens_used": decision.total_tokens or 0,
                "cost": decision.actual_cost or 0.0,
                "response_time_ms": decision.processing_duration_ms or 0,
                "accuracy": decision.model_accuracy,
                "user_tier": shape.get("user_tier") or "free",
            },
        )

"""Daily provider quotas and the Critical step-down ladder.

QuotaLedger keeps one token counter per (UTC day, provider) in the shared
state store. Counters only ever grow within a day; a new day starts with
fresh keys, and purge_stale() removes the old ones.

QuotaAwareSelector turns the catalog plus live quota consumption into
ModelCandidate values and drives ModelSelector:
- Critical (and emergency) requests walk the step-down ladder: at each
  percentage p every provider's budget shrinks to dailyQuota * p / 100, and
  the first p that yields an eligible model wins.
- Standard requests are selected once at 100%.
- Free-tier requests go straight to the zero-cost pool.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from airouter.exceptions import NoEligibleModel, QuotaExhausted, StateStoreError
from airouter.routing.catalog import CredentialProvider, ProviderCatalog, ProviderProfile
from airouter.routing.classifier import RoutingRequest, ServiceLevel
from airouter.routing.decision import DecisionKind
from airouter.routing.selector import ModelCandidate, ModelSelector, Selection
from airouter.state import StateStore, StoreResult

if TYPE_CHECKING:
    from airouter.config import Settings

log = structlog.get_logger(__name__)

# Counters outlive their day by one extra day so late readers still see them
_COUNTER_TTL_SECONDS = 2 * 24 * 3600

_UNLIMITED = 1 << 62


def _utcnow() -> datetime:
    return datetime.now(UTC)


def next_utc_midnight(now: datetime) -> datetime:
    midnight = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


class QuotaLedger:
    """Tracks tokens consumed per provider per UTC day.

    Store failures never raise out of this class: reads degrade to zero
    consumption and writes return a failed StoreResult, both logged.
    """

    # Alert thresholds (fraction of the provider's daily quota)
    WARNING_THRESHOLD = 0.80
    CRITICAL_THRESHOLD = 0.95

    KEY_PREFIX = "quota"

    def __init__(
        self,
        store: StateStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._clock = clock

    def today(self) -> str:
        return self._clock().astimezone(UTC).strftime("%Y-%m-%d")

    def _key(self, provider_id: str, day: str) -> str:
        return f"{self.KEY_PREFIX}:{day}:{provider_id}"

    async def consumed(self, provider_id: str, day: str | None = None) -> int:
        """Tokens consumed by a provider on a day (today by default)."""
        key = self._key(provider_id, day or self.today())
        try:
            value = await self._store.get(key)
        except StateStoreError as exc:
            log.warning("quota.read_failed", provider=provider_id, error=str(exc))
            return 0
        return int(value or 0)

    async def consumed_map(self, provider_ids: list[str]) -> dict[str, int]:
        """Snapshot of today's consumption for several providers."""
        day = self.today()
        return {pid: await self.consumed(pid, day) for pid in provider_ids}

    @staticmethod
    def remaining(profile: ProviderProfile, consumed: int, percentage: int = 100) -> int:
        """Tokens left for a provider when its budget is scaled to ``percentage``."""
        adjusted = profile.daily_quota * percentage // 100
        return adjusted - consumed

    async def record_usage(
        self,
        provider_id: str,
        tokens: int,
        *,
        daily_quota: int | None = None,
    ) -> StoreResult:
        """Add consumed tokens to today's counter for a provider.

        Args:
            provider_id: Provider that served the request
            tokens: Tokens consumed (context + response)
            daily_quota: Provider quota, used only for threshold alerts

        Returns:
            StoreResult whose value is the new daily total

        Raises:
            ValueError: if tokens is negative
        """
        if tokens < 0:
            raise ValueError("tokens cannot be negative")
        key = self._key(provider_id, self.today())
        try:
            total = await self._store.increment(key, tokens, ttl=_COUNTER_TTL_SECONDS)
        except StateStoreError as exc:
            log.warning(
                "quota.record_failed",
                provider=provider_id,
                tokens=tokens,
                error=str(exc),
            )
            return StoreResult.failure(str(exc))

        log.info("quota.usage_recorded", provider=provider_id, tokens=tokens, daily_used=total)
        if daily_quota:
            self._check_thresholds(provider_id, total, daily_quota)
        return StoreResult.success(total)

    def _check_thresholds(self, provider_id: str, used: int, daily_quota: int) -> None:
        usage_pct = used / daily_quota
        if usage_pct >= self.CRITICAL_THRESHOLD:
            log.error(
                "quota.critical_threshold",
                provider=provider_id,
                usage_pct=round(usage_pct * 100, 1),
                used=used,
                limit=daily_quota,
            )
        elif usage_pct >= self.WARNING_THRESHOLD:
            log.warning(
                "quota.warning_threshold",
                provider=provider_id,
                usage_pct=round(usage_pct * 100, 1),
                used=used,
                limit=daily_quota,
            )

    async def utilization(self, catalog: ProviderCatalog) -> dict[str, float]:
        """Percent of each provider's daily quota consumed today."""
        consumed = await self.consumed_map([p.provider_id for p in catalog.providers])
        result: dict[str, float] = {}
        for profile in catalog.providers:
            used = consumed[profile.provider_id]
            result[profile.provider_id] = (
                round(used / profile.daily_quota * 100, 2) if profile.daily_quota else 0.0
            )
        return result

    async def purge_stale(self) -> StoreResult:
        """Delete counters for any day other than today.

        Today's counters are never touched, so consumption stays monotone
        within a day no matter when this runs.
        """
        today = self.today()
        try:
            keys = await self._store.keys(f"{self.KEY_PREFIX}:*")
            stale = [k for k in keys if k.split(":")[1] != today]
            for key in stale:
                await self._store.delete(key)
        except StateStoreError as exc:
            log.warning("quota.purge_failed", error=str(exc))
            return StoreResult.failure(str(exc))
        if stale:
            log.info("quota.stale_purged", deleted=len(stale), today=today)
        return StoreResult.success(len(stale))

    async def reset_daily_quotas(self) -> StoreResult:
        """Daily reset hook; equivalent to purging every previous day."""
        return await self.purge_stale()


class QuotaAwareSelector:
    """Builds quota-aware candidates and applies the step-down ladder.

    Args:
        catalog: Provider catalog
        ledger: Daily quota ledger
        selector: Pure ranking policy
        credentials: Resolves model credential references
        settings: Supplies the step-down ladder
        clock: UTC clock, used for the quota reset time in errors
    """

    def __init__(
        self,
        catalog: ProviderCatalog,
        ledger: QuotaLedger,
        selector: ModelSelector,
        credentials: CredentialProvider,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._catalog = catalog
        self._ledger = ledger
        self._selector = selector
        self._credentials = credentials
        self._ladder = list(settings.quota_step_down_ladder)
        self._clock = clock

    def build_candidates(
        self,
        consumed: dict[str, int],
        percentage: int = 100,
        *,
        ignore_quota: bool = False,
    ) -> list[ModelCandidate]:
        """One ModelCandidate per catalog model at the given quota percentage."""
        candidates: list[ModelCandidate] = []
        for profile in self._catalog.providers:
            if ignore_quota:
                remaining = _UNLIMITED
            else:
                remaining = QuotaLedger.remaining(
                    profile, consumed.get(profile.provider_id, 0), percentage
                )
            for model in profile.models:
                credential = (
                    self._credentials.resolve(model.credential_ref)
                    if model.credential_ref
                    else None
                )
                candidates.append(
                    ModelCandidate(
                        descriptor=model,
                        credential=credential,
                        quota_remaining=remaining,
                        free_tier=profile.free_tier,
                    )
                )
        return candidates

    async def select(self, request: RoutingRequest) -> Selection:
        """Select a model for the request.

        Raises:
            QuotaExhausted: when quota is the only thing preventing selection
            NoEligibleModel: when no model qualifies even with unlimited quota
        """
        consumed = await self._ledger.consumed_map(
            [p.provider_id for p in self._catalog.providers]
        )

        if request.prefer_free_tier:
            return self.select_free_tier(request, consumed)

        if request.emergency or request.service_level == ServiceLevel.CRITICAL:
            return self.select_with_step_down(request, consumed)

        try:
            return self._selector.select(
                ServiceLevel.STANDARD, self.build_candidates(consumed), request
            )
        except NoEligibleModel:
            if not self._quota_is_binding(ServiceLevel.STANDARD, request):
                raise

        log.warning("quota.standard_exhausted", request_type=request.request_type)
        try:
            return self.select_free_tier(request, consumed)
        except NoEligibleModel:
            raise QuotaExhausted(next_reset_at=next_utc_midnight(self._clock())) from None

    def select_with_step_down(
        self,
        request: RoutingRequest,
        consumed: dict[str, int],
    ) -> Selection:
        """Walk the ladder for Critical (or emergency) selection."""
        for percentage in self._ladder:
            candidates = self.build_candidates(consumed, percentage)
            try:
                selection = self._selector.select(ServiceLevel.CRITICAL, candidates, request)
            except NoEligibleModel:
                log.debug("quota.step_down_empty", percentage=percentage)
                continue

            selection.step_down_percentage = percentage
            if percentage < 100:
                selection.decision_kind = DecisionKind.QUOTA_EXCEEDED_STEPDOWN
                selection.reason = (
                    f"Quota step-down to {percentage}% of daily quota; " + selection.reason
                )
                log.info(
                    "quota.step_down_selected",
                    percentage=percentage,
                    provider=selection.candidate.provider,
                    model=selection.candidate.model,
                )
            if request.emergency:
                selection.decision_kind = DecisionKind.EMERGENCY_OVERRIDE
                selection.reason = "Emergency override: " + selection.reason
            return selection

        if request.emergency:
            try:
                selection = self._selector.select(
                    ServiceLevel.STANDARD, self.build_candidates(consumed), request
                )
            except NoEligibleModel:
                pass
            else:
                selection.decision_kind = DecisionKind.EMERGENCY_OVERRIDE
                selection.reason = (
                    "Emergency override: no critical-grade model available at any "
                    "step-down level, served by standard tier; " + selection.reason
                )
                log.warning(
                    "quota.emergency_cross_tier",
                    provider=selection.candidate.provider,
                    model=selection.candidate.model,
                )
                return selection

        if not self._quota_is_binding(ServiceLevel.CRITICAL, request):
            raise NoEligibleModel(
                f"No critical-grade model is configured for {request.request_type!r}"
            )

        log.warning(
            "quota.ladder_exhausted",
            request_type=request.request_type,
            emergency=request.emergency,
            ladder=self._ladder,
        )
        raise QuotaExhausted(next_reset_at=next_utc_midnight(self._clock()))

    def select_free_tier(
        self,
        request: RoutingRequest,
        consumed: dict[str, int],
        *,
        exclude: tuple[str, str] | None = None,
    ) -> Selection:
        return self._selector.select_free_tier(
            self.build_candidates(consumed), request, exclude=exclude
        )

    async def free_tier_fallback(
        self,
        request: RoutingRequest,
        *,
        exclude: tuple[str, str] | None = None,
    ) -> Selection:
        """Free-tier selection using fresh consumption figures."""
        consumed = await self._ledger.consumed_map(
            [p.provider_id for p in self._catalog.free_tier_profiles()]
        )
        return self.select_free_tier(request, consumed, exclude=exclude)

    def _quota_is_binding(self, level: ServiceLevel, request: RoutingRequest) -> bool:
        """True if some model would qualify were quota unlimited."""
        unlimited = self.build_candidates({}, ignore_quota=True)
        return bool(self._selector.eligible(unlimited, level, request))

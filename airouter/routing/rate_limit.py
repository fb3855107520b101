"""Per-user admission control for Critical requests.

Rules, checked in order:
1. Cooldown: a fixed interval must pass between two admitted Critical
   requests from the same user.
2. Three calendar-aligned windows (minute, hour, day). Each window starts
   at the current UTC time truncated to its granularity; its counter key
   embeds the window start and expires at the window boundary.

The first violated rule denies admission with a structured wait time.
There is no queueing: denied requests are the caller's to retry.

Atomicity: admit() runs check + record under a per-user store lock, so
two concurrent requests for the same user can never both take the last
slot. If the shared store fails, the limiter falls back to an in-process
store and keeps enforcing limits locally.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from airouter.exceptions import AdmissionDenied, StateStoreError
from airouter.state import InMemoryStateStore, StateStore

if TYPE_CHECKING:
    from airouter.config import Settings

log = structlog.get_logger(__name__)

ANONYMOUS_USER = "anonymous"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def window_start(now: datetime, window: str) -> datetime:
    """Truncate a UTC time to the start of its minute, hour or day window."""
    now = now.astimezone(UTC)
    if window == "minute":
        return now.replace(second=0, microsecond=0)
    if window == "hour":
        return now.replace(minute=0, second=0, microsecond=0)
    if window == "day":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    raise ValueError(f"unknown window {window!r}")


_WINDOW_LENGTH = {
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
}


@dataclass
class AdmissionResult:
    """Outcome of an admission check.

    Attributes:
        allowed: Whether the request may proceed
        remaining: Admissions left before the tightest window is full
        reset_at: Earliest window boundary (allowed) or the time the
            violated rule clears (denied)
        retry_after_seconds: Seconds to wait when denied, else 0
        violated_rule: "cooldown", "minute", "hour" or "day" when denied
    """

    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after_seconds: float = 0.0
    violated_rule: str | None = None

    def to_exception(self, decision_id: str | None = None) -> AdmissionDenied:
        return AdmissionDenied(
            violated_rule=self.violated_rule or "unknown",
            retry_after_seconds=self.retry_after_seconds,
            next_allowed_at=self.reset_at,
            decision_id=decision_id,
        )


@dataclass
class WindowStatus:
    used: int
    limit: int
    resets_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


@dataclass
class RateLimitStatus:
    """Snapshot of a user's Critical rate-limit state."""

    user_id: str
    can_request: bool
    cooldown_remaining_seconds: float
    next_allowed_at: datetime
    windows: dict[str, WindowStatus] = field(default_factory=dict)


class CriticalRateLimiter:
    """Cooldown plus minute/hour/day caps for Critical requests.

    Args:
        store: Shared state store holding counters and cooldown marks
        settings: Supplies cooldown and window limits
        clock: UTC clock, injectable for tests
    """

    KEY_PREFIX = "ratelimit"

    def __init__(
        self,
        store: StateStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._fallback = InMemoryStateStore()
        self._clock = clock
        self._cooldown = timedelta(seconds=settings.critical_cooldown_seconds)
        self._limits = {
            "minute": settings.critical_per_minute,
            "hour": settings.critical_per_hour,
            "day": settings.critical_per_day,
        }
        log.info(
            "rate_limit.initialized",
            cooldown_seconds=settings.critical_cooldown_seconds,
            limits=self._limits,
        )

    # ------------------------------------------------------------------ #
    # Keys
    # ------------------------------------------------------------------ #

    @staticmethod
    def _user(user_id: str | None) -> str:
        return str(user_id) if user_id else ANONYMOUS_USER

    def _cooldown_key(self, user: str) -> str:
        return f"{self.KEY_PREFIX}:{user}:cooldown"

    def _window_key(self, user: str, window: str, start: datetime) -> str:
        return f"{self.KEY_PREFIX}:{user}:{window}:{start.strftime('%Y%m%dT%H%M')}"

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def check_admission(self, user_id: str | None) -> AdmissionResult:
        """Evaluate the rules without recording anything."""
        try:
            return await self._check(self._store, self._user(user_id), self._clock())
        except StateStoreError as exc:
            log.error("rate_limit.store_failed", error=str(exc), fallback="in-memory")
            return await self._check(self._fallback, self._user(user_id), self._clock())

    async def record_admission(self, user_id: str | None) -> None:
        """Start the cooldown and count the request in every window."""
        try:
            await self._record(self._store, self._user(user_id), self._clock())
        except StateStoreError as exc:
            log.error("rate_limit.store_failed", error=str(exc), fallback="in-memory")
            await self._record(self._fallback, self._user(user_id), self._clock())

    async def admit(self, user_id: str | None) -> AdmissionResult:
        """Atomically check and, when allowed, record an admission."""
        user = self._user(user_id)
        try:
            return await self._admit(self._store, user)
        except StateStoreError as exc:
            log.error("rate_limit.store_failed", error=str(exc), fallback="in-memory")
            return await self._admit(self._fallback, user)

    async def status(self, user_id: str | None) -> RateLimitStatus:
        user = self._user(user_id)
        try:
            return await self._status(self._store, user, self._clock())
        except StateStoreError as exc:
            log.error("rate_limit.store_failed", error=str(exc), fallback="in-memory")
            return await self._status(self._fallback, user, self._clock())

    async def reset(self, user_id: str | None) -> None:
        """Clear cooldown and every window counter for a user."""
        user = self._user(user_id)
        for store in (self._store, self._fallback):
            try:
                for key in await store.keys(f"{self.KEY_PREFIX}:{user}:*"):
                    await store.delete(key)
            except StateStoreError as exc:
                log.error("rate_limit.reset_failed", user_id=user, error=str(exc))
        log.info("rate_limit.reset", user_id=user)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    async def _admit(self, store: StateStore, user: str) -> AdmissionResult:
        async with store.lock(f"{self.KEY_PREFIX}:{user}"):
            now = self._clock()
            result = await self._check(store, user, now)
            if result.allowed:
                await self._record(store, user, now)
                result.remaining = max(0, result.remaining - 1)
        if result.allowed:
            log.info("rate_limit.admitted", user_id=user, remaining=result.remaining)
        else:
            log.warning(
                "rate_limit.denied",
                user_id=user,
                rule=result.violated_rule,
                retry_after_seconds=round(result.retry_after_seconds, 1),
            )
        return result

    async def _cooldown_until(self, store: StateStore, user: str) -> datetime | None:
        raw = await store.get(self._cooldown_key(user))
        return datetime.fromisoformat(raw) if raw else None

    async def _check(self, store: StateStore, user: str, now: datetime) -> AdmissionResult:
        until = await self._cooldown_until(store, user)
        if until is not None and now < until:
            return AdmissionResult(
                allowed=False,
                remaining=0,
                reset_at=until,
                retry_after_seconds=(until - now).total_seconds(),
                violated_rule="cooldown",
            )

        remaining: list[int] = []
        boundaries: list[datetime] = []
        for window, limit in self._limits.items():
            start = window_start(now, window)
            boundary = start + _WINDOW_LENGTH[window]
            used = int(await store.get(self._window_key(user, window, start)) or 0)
            if used >= limit:
                return AdmissionResult(
                    allowed=False,
                    remaining=0,
                    reset_at=boundary,
                    retry_after_seconds=(boundary - now).total_seconds(),
                    violated_rule=window,
                )
            remaining.append(limit - used)
            boundaries.append(boundary)

        return AdmissionResult(allowed=True, remaining=min(remaining), reset_at=min(boundaries))

    async def _record(self, store: StateStore, user: str, now: datetime) -> None:
        if self._cooldown.total_seconds() > 0:
            await store.set(
                self._cooldown_key(user),
                (now + self._cooldown).isoformat(),
                ttl=self._cooldown.total_seconds(),
            )
        for window in self._limits:
            start = window_start(now, window)
            boundary = start + _WINDOW_LENGTH[window]
            await store.increment(
                self._window_key(user, window, start),
                1,
                ttl=max(1.0, (boundary - now).total_seconds()),
            )

    async def _status(self, store: StateStore, user: str, now: datetime) -> RateLimitStatus:
        windows: dict[str, WindowStatus] = {}
        for window, limit in self._limits.items():
            start = window_start(now, window)
            used = int(await store.get(self._window_key(user, window, start)) or 0)
            windows[window] = WindowStatus(
                used=used,
                limit=limit,
                resets_at=start + _WINDOW_LENGTH[window],
            )

        check = await self._check(store, user, now)
        until = await self._cooldown_until(store, user)
        cooldown_remaining = (
            max(0.0, (until - now).total_seconds()) if until is not None else 0.0
        )
        return RateLimitStatus(
            user_id=user,
            can_request=check.allowed,
            cooldown_remaining_seconds=cooldown_remaining,
            next_allowed_at=now if check.allowed else check.reset_at,
            windows=windows,
        )

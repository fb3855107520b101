"""Retry and fallback around provider calls.

execute_with_retry() runs one awaitable with exponential backoff through
tenacity. ProviderCallExecutor uses it to drive a routed call end to end:

1. primary target, retried once with backoff
2. exactly one fallback: the route's designated fallback, or the best
   free-tier model when the route has none
3. a synthetic degraded response when the caller supplies a factory,
   otherwise ProviderCallFailed

Every failed attempt is recorded on the routing decision; the final
outcome is reported back through the router.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from airouter.config import Settings, get_settings
from airouter.exceptions import ProviderCallFailed
from airouter.routing.decision import CompletionReport
from airouter.routing.router import CallTarget, RouteResult

if TYPE_CHECKING:
    from airouter.routing.router import Router

log = structlog.get_logger(__name__)

T = TypeVar("T")

# Transient failures worth another attempt
RETRYABLE: tuple[type[BaseException], ...] = (
    ProviderCallFailed,
    ConnectionError,
    TimeoutError,
)

DEGRADED_RESPONSE = "DEGRADED_RESPONSE"


def backoff_delay(attempt: int, base: float = 1.0, factor: float = 2.0, cap: float = 30.0) -> float:
    """Delay before the retry that follows failed attempt number ``attempt``."""
    return min(base * factor ** (attempt - 1), cap)


def error_code_for(exc: BaseException) -> str:
    if isinstance(exc, ProviderCallFailed):
        return exc.error_code
    if isinstance(exc, TimeoutError):
        return "PROVIDER_TIMEOUT"
    if isinstance(exc, ConnectionError):
        return "PROVIDER_UNREACHABLE"
    return getattr(exc, "error_code", type(exc).__name__)


def _log_before_sleep(context: str) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        log.warning(
            "retry.backing_off",
            context=context,
            attempt=state.attempt_number,
            delay_seconds=state.next_action.sleep if state.next_action else None,
            error=str(exc),
        )

    return _before_sleep


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 2,
    base: float = 1.0,
    factor: float = 2.0,
    cap: float = 30.0,
    context: str = "",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_failure: Callable[[BaseException, int], Awaitable[None]] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    Only RETRYABLE errors are retried; anything else propagates at once.
    After the final failed attempt the last error propagates unchanged.

    Args:
        operation: Zero-argument coroutine factory
        max_attempts: Total attempts including the first
        base: Delay after the first failure, in seconds
        factor: Multiplier applied per further failure
        cap: Upper bound for any single delay
        context: Label for log events
        sleep: Awaitable sleep, injectable for tests
        on_failure: Awaited with (error, attempt number) after each
            retryable failure

    Returns:
        The operation's result
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(RETRYABLE),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base, exp_base=factor, max=cap),
        sleep=sleep,
        before_sleep=_log_before_sleep(context),
        reraise=True,
    )
    result: Any = None
    async for attempt in retrying:
        with attempt:
            try:
                result = await operation()
            except RETRYABLE as exc:
                if on_failure is not None:
                    await on_failure(exc, attempt.retry_state.attempt_number)
                raise
    return result


# ---------------------------------------------------------------------------
# Provider call orchestration
# ---------------------------------------------------------------------------


@dataclass
class CallOutcome:
    """What a provider call returns to the executor."""

    response: Any
    response_tokens: int
    actual_cost: float | None = None
    confidence: float | None = None
    duration_ms: int | None = None


@dataclass
class ExecutionResult:
    outcome: CallOutcome
    target: CallTarget | None
    fallback_used: bool = False
    degraded: bool = False
    cached: bool = False


ProviderCall = Callable[[CallTarget], Awaitable[CallOutcome]]
DegradeFactory = Callable[[RouteResult, BaseException], Any]


class ProviderCallExecutor:
    """Runs a routed call with retry, one fallback and optional degradation.

    Args:
        router: Router that produced the route and owns the decision
        settings: Supplies the backoff parameters
        sleep: Awaitable sleep, injectable for tests
    """

    def __init__(
        self,
        router: Router,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._router = router
        self._settings = settings or get_settings()
        self._sleep = sleep

    async def execute(
        self,
        route: RouteResult,
        call: ProviderCall,
        degrade: DegradeFactory | None = None,
    ) -> ExecutionResult:
        """Call the routed provider and settle the decision.

        Raises:
            ProviderCallFailed: when primary and fallback both fail and no
                degrade factory is given
        """
        if route.cached:
            return ExecutionResult(
                outcome=CallOutcome(response=route.cached_response, response_tokens=0),
                target=None,
                cached=True,
            )
        if route.decision_id is None:
            raise ValueError("route has no decision to execute")

        decision_id = route.decision_id
        primary = route.target
        await self._router.mark_processing(decision_id)

        async def _record(exc: BaseException, attempt: int, target: CallTarget) -> None:
            await self._router.record_retry(
                decision_id,
                error_code_for(exc),
                str(exc),
                provider=target.provider,
                model=target.model,
            )

        try:
            outcome = await execute_with_retry(
                lambda: call(primary),
                max_attempts=self._settings.retry_max_attempts,
                base=self._settings.retry_base_seconds,
                factor=self._settings.retry_factor,
                cap=self._settings.retry_cap_seconds,
                context=f"{primary.provider}/{primary.model}",
                sleep=self._sleep,
                on_failure=lambda exc, n: _record(exc, n, primary),
            )
        except RETRYABLE as exc:
            last_error: BaseException = exc
        except Exception as exc:
            await self._router.report_failure(decision_id, error_code_for(exc), str(exc))
            raise
        else:
            await self._complete(route, primary, outcome, fallback=False)
            return ExecutionResult(outcome=outcome, target=primary)

        fallback = route.fallback or await self._router.free_tier_target(route)
        if fallback is not None:
            log.warning(
                "executor.fallback",
                decision_id=decision_id,
                from_provider=primary.provider,
                to_provider=fallback.provider,
                to_model=fallback.model,
            )
            try:
                outcome = await call(fallback)
            except RETRYABLE as exc:
                await _record(exc, 1, fallback)
                last_error = exc
            except Exception as exc:
                await self._router.report_failure(decision_id, error_code_for(exc), str(exc))
                raise
            else:
                await self._complete(route, fallback, outcome, fallback=True)
                return ExecutionResult(outcome=outcome, target=fallback, fallback_used=True)

        if degrade is not None:
            response = degrade(route, last_error)
            await self._router.report_failure(decision_id, DEGRADED_RESPONSE, str(last_error))
            log.warning("executor.degraded", decision_id=decision_id, error=str(last_error))
            return ExecutionResult(
                outcome=CallOutcome(response=response, response_tokens=0, actual_cost=0.0),
                target=None,
                fallback_used=fallback is not None,
                degraded=True,
            )

        await self._router.report_failure(decision_id, error_code_for(last_error), str(last_error))
        raise ProviderCallFailed(
            f"All providers failed for {route.request_type}: {last_error}",
            provider=primary.provider,
            model=primary.model,
        ) from last_error

    async def _complete(
        self,
        route: RouteResult,
        target: CallTarget,
        outcome: CallOutcome,
        *,
        fallback: bool,
    ) -> None:
        actual_cost = outcome.actual_cost
        if actual_cost is None and fallback:
            descriptor = self._router.catalog.find_model(target.provider, target.model)
            if descriptor is not None:
                actual_cost = route.estimated_tokens * descriptor.cost_per_token
        await self._router.report_completion(
            route.decision_id or "",
            CompletionReport(
                response_tokens=outcome.response_tokens,
                actual_cost=actual_cost,
                confidence=outcome.confidence,
                duration_ms=outcome.duration_ms,
                response=outcome.response,
                provider=target.provider,
                model=target.model,
            ),
        )

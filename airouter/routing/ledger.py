"""Decision ledger - durable record of every routing decision.

DecisionLedger defines the operations; every status change goes through
_apply(), which loads the decision, runs one RoutingDecision transition and
stores the result atomically. A transition the state machine rejects (for
example a second completion callback) returns None instead of raising, so
duplicated callbacks are harmless.

Two implementations:
- InMemoryDecisionLedger: dict guarded by an asyncio.Lock (tests, single
  process)
- SqlDecisionLedger: SQLAlchemy async; each update is a conditional
  ``UPDATE ... WHERE id = :id AND version = :version`` so concurrent
  writers for one decision are linearised without row locks
"""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from airouter.exceptions import DecisionNotFound, InvalidTransition
from airouter.models.routing_decision import RoutingDecisionRecord
from airouter.routing.decision import (
    CompletionReport,
    DecisionKind,
    DecisionStatus,
    RoutingDecision,
)

log = structlog.get_logger(__name__)

_OPEN_STATUSES = (DecisionStatus.PENDING, DecisionStatus.PROCESSING)
_CAS_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DecisionLedger(ABC):
    """Append-only store of RoutingDecision values.

    Args:
        clock: UTC clock used for transition timestamps
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock

    @abstractmethod
    async def add(self, decision: RoutingDecision) -> RoutingDecision:
        """Insert a new decision."""

    @abstractmethod
    async def get(self, decision_id: str) -> RoutingDecision:
        """Return a decision. Raises DecisionNotFound."""

    @abstractmethod
    async def between(self, start: datetime, end: datetime) -> list[RoutingDecision]:
        """Decisions created in [start, end)."""

    @abstractmethod
    async def open_ids_before(self, cutoff: datetime) -> list[str]:
        """Ids of PENDING/PROCESSING decisions created before cutoff."""

    @abstractmethod
    async def _apply(
        self,
        decision_id: str,
        mutate: Callable[[RoutingDecision], None],
    ) -> RoutingDecision | None:
        """Load, mutate and atomically store one decision.

        Returns None when the mutation raised InvalidTransition.
        """

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start(self, decision_id: str) -> RoutingDecision | None:
        now = self._clock()
        return await self._apply(decision_id, lambda d: d.start(now))

    async def complete(
        self,
        decision_id: str,
        report: CompletionReport,
    ) -> RoutingDecision | None:
        now = self._clock()
        return await self._apply(decision_id, lambda d: d.complete(report, now))

    async def fail(
        self,
        decision_id: str,
        error_code: str,
        error_message: str,
    ) -> RoutingDecision | None:
        now = self._clock()
        return await self._apply(decision_id, lambda d: d.fail(error_code, error_message, now))

    async def cancel(self, decision_id: str) -> RoutingDecision | None:
        now = self._clock()
        return await self._apply(decision_id, lambda d: d.cancel(now))

    async def time_out(self, decision_id: str) -> RoutingDecision | None:
        now = self._clock()
        return await self._apply(decision_id, lambda d: d.time_out(now))

    async def record_retry(
        self,
        decision_id: str,
        error_code: str,
        error_message: str,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> RoutingDecision | None:
        now = self._clock()
        return await self._apply(
            decision_id,
            lambda d: d.record_retry(error_code, error_message, now, provider=provider, model=model),
        )

    async def sweep_timeouts(self, max_age_seconds: float) -> int:
        """Time out every open decision older than ``max_age_seconds``.

        Returns:
            Number of decisions moved to TIMEOUT
        """
        cutoff = self._clock().timestamp() - max_age_seconds
        cutoff_dt = datetime.fromtimestamp(cutoff, UTC)
        swept = 0
        for decision_id in await self.open_ids_before(cutoff_dt):
            if await self.time_out(decision_id) is not None:
                swept += 1
        if swept:
            log.info("ledger.timeouts_swept", count=swept, max_age_seconds=max_age_seconds)
        return swept

    @staticmethod
    def _run(decision: RoutingDecision, mutate: Callable[[RoutingDecision], None]) -> bool:
        try:
            mutate(decision)
        except InvalidTransition as exc:
            log.info(
                "ledger.transition_ignored",
                decision_id=decision.id,
                status=exc.current,
                target=exc.target,
            )
            return False
        return True


# ---------------------------------------------------------------------------
# In-memory ledger
# ---------------------------------------------------------------------------


class InMemoryDecisionLedger(DecisionLedger):
    """Dict-backed ledger. Does NOT persist across process restarts."""

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        super().__init__(clock=clock)
        self._decisions: dict[str, RoutingDecision] = {}
        self._lock = asyncio.Lock()

    async def add(self, decision: RoutingDecision) -> RoutingDecision:
        async with self._lock:
            if decision.id in self._decisions:
                raise ValueError(f"decision {decision.id} already recorded")
            self._decisions[decision.id] = copy.deepcopy(decision)
        log.debug("ledger.decision_added", decision_id=decision.id)
        return decision

    async def get(self, decision_id: str) -> RoutingDecision:
        async with self._lock:
            decision = self._decisions.get(decision_id)
            if decision is None:
                raise DecisionNotFound(decision_id)
            return copy.deepcopy(decision)

    async def between(self, start: datetime, end: datetime) -> list[RoutingDecision]:
        async with self._lock:
            return [
                copy.deepcopy(d)
                for d in self._decisions.values()
                if start <= d.created_at < end
            ]

    async def open_ids_before(self, cutoff: datetime) -> list[str]:
        async with self._lock:
            return [
                d.id
                for d in self._decisions.values()
                if d.status in _OPEN_STATUSES and d.created_at < cutoff
            ]

    async def _apply(
        self,
        decision_id: str,
        mutate: Callable[[RoutingDecision], None],
    ) -> RoutingDecision | None:
        async with self._lock:
            current = self._decisions.get(decision_id)
            if current is None:
                raise DecisionNotFound(decision_id)
            working = copy.deepcopy(current)
            if not self._run(working, mutate):
                return None
            self._decisions[decision_id] = working
            return copy.deepcopy(working)


# ---------------------------------------------------------------------------
# SQL ledger
# ---------------------------------------------------------------------------

_COLUMNS = (
    "request_id",
    "user_id",
    "session_id",
    "request_type",
    "service_level",
    "context_tokens",
    "max_response_tokens",
    "emergency",
    "user_tier",
    "user_region",
    "provider",
    "model",
    "endpoint",
    "routing_reason",
    "step_down_percentage",
    "alternatives",
    "fallback_provider",
    "fallback_model",
    "quota_remaining",
    "model_accuracy",
    "rate_limit_hit",
    "estimated_cost",
    "actual_cost",
    "response_tokens",
    "total_tokens",
    "confidence",
    "cost_efficiency",
    "user_feedback",
    "processing_duration_ms",
    "retry_count",
    "error_code",
    "error_message",
    "created_at",
    "started_at",
    "completed_at",
    "last_retry_at",
)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything in the ledger is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def to_columns(decision: RoutingDecision) -> dict[str, Any]:
    values = {name: getattr(decision, name) for name in _COLUMNS}
    values["decision_kind"] = decision.decision_kind.value
    values["status"] = decision.status.value
    values["decision_metadata"] = decision.metadata
    return values


def to_domain(record: RoutingDecisionRecord) -> RoutingDecision:
    values = {name: getattr(record, name) for name in _COLUMNS}
    for name in ("created_at", "started_at", "completed_at", "last_retry_at"):
        values[name] = _aware(values[name])
    return RoutingDecision(
        id=record.id,
        decision_kind=DecisionKind(record.decision_kind),
        status=DecisionStatus(record.status),
        metadata=dict(record.decision_metadata or {}),
        **values,
    )


class SqlDecisionLedger(DecisionLedger):
    """Ledger backed by the routing_decisions table.

    The session factory is injected so the caller controls engine lifetime.
    Each public call uses its own short transaction.

    Usage:
        ledger = SqlDecisionLedger(get_session_factory())
        await ledger.add(decision)
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(clock=clock)
        self._session_factory = session_factory
        log.info("sql_ledger.initialized")

    async def add(self, decision: RoutingDecision) -> RoutingDecision:
        values = to_columns(decision)
        record = RoutingDecisionRecord(id=decision.id, version=0, **values)
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
        log.debug("sql_ledger.decision_added", decision_id=decision.id)
        return decision

    async def get(self, decision_id: str) -> RoutingDecision:
        async with self._session_factory() as session:
            record = await session.get(RoutingDecisionRecord, decision_id)
            if record is None:
                raise DecisionNotFound(decision_id)
            return to_domain(record)

    async def between(self, start: datetime, end: datetime) -> list[RoutingDecision]:
        stmt = (
            select(RoutingDecisionRecord)
            .where(
                RoutingDecisionRecord.created_at >= start,
                RoutingDecisionRecord.created_at < end,
            )
            .order_by(RoutingDecisionRecord.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [to_domain(r) for r in result.scalars().all()]

    async def open_ids_before(self, cutoff: datetime) -> list[str]:
        stmt = select(RoutingDecisionRecord.id).where(
            RoutingDecisionRecord.status.in_([s.value for s in _OPEN_STATUSES]),
            RoutingDecisionRecord.created_at < cutoff,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def _apply(
        self,
        decision_id: str,
        mutate: Callable[[RoutingDecision], None],
    ) -> RoutingDecision | None:
        for attempt in range(_CAS_ATTEMPTS):
            async with self._session_factory() as session:
                record = await session.get(RoutingDecisionRecord, decision_id)
                if record is None:
                    raise DecisionNotFound(decision_id)
                version = record.version
                decision = to_domain(record)
                if not self._run(decision, mutate):
                    return None

                stmt = (
                    update(RoutingDecisionRecord)
                    .where(
                        RoutingDecisionRecord.id == decision_id,
                        RoutingDecisionRecord.version == version,
                    )
                    .values(
                        {
                            RoutingDecisionRecord.version: version + 1,
                            **{
                                getattr(RoutingDecisionRecord, name): value
                                for name, value in to_columns(decision).items()
                            },
                        }
                    )
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                await session.commit()
                if result.rowcount == 1:
                    return decision

            log.debug("sql_ledger.cas_conflict", decision_id=decision_id, attempt=attempt + 1)

        log.warning("sql_ledger.cas_exhausted", decision_id=decision_id)
        return None

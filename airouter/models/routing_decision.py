"""Routing decision ORM model.

Design principles:
- RoutingDecisionRecord: append-only ledger of every routing decision. Rows
  are inserted once and then only updated by status transitions, always
  through a compare-and-set on ``version`` so concurrent callbacks for the
  same decision are linearised.
- Portable column types (string ids, JSON) so the ledger runs on
  PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from airouter.database import Base


class RoutingDecisionRecord(Base):
    """One routed request and its outcome.

    Attributes:
        id: Decision id (UUID string)
        version: Optimistic concurrency counter, bumped on every update
        status: pending | processing | completed | failed | cancelled | timeout
        decision_kind: Why the model was chosen (selected_primary, ...)
        alternatives: Ranked alternatives considered at routing time
        decision_metadata: Free-form data (attempt history, cross-tier notes)
    """

    __tablename__ = "routing_decisions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    user_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        comment="May be null for anonymous requests",
    )
    session_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Request
    request_type: Mapped[str] = mapped_column(String(50), nullable=False)
    service_level: Mapped[str] = mapped_column(String(20), nullable=False)
    context_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_response_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    emergency: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    user_tier: Mapped[str | None] = mapped_column(String(50), nullable=True)
    user_region: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # Routing
    provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    endpoint: Mapped[str | None] = mapped_column(String(500), nullable=True)
    decision_kind: Mapped[str] = mapped_column(String(40), nullable=False)
    routing_reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    step_down_percentage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    alternatives: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    fallback_provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    fallback_model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    quota_remaining: Mapped[int | None] = mapped_column(Integer, nullable=True)
    model_accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    rate_limit_hit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Outcome
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    estimated_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    actual_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    response_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    cost_efficiency: Mapped[float | None] = mapped_column(Float, nullable=True)
    user_feedback: Mapped[float | None] = mapped_column(Float, nullable=True)
    processing_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps (UTC)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    decision_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
    )

    __table_args__ = (
        Index("ix_routing_decisions_user_type_time", "user_id", "request_type", "created_at"),
        Index("ix_routing_decisions_level_provider_model", "service_level", "provider", "model"),
        Index("ix_routing_decisions_kind_status", "decision_kind", "status"),
        # Analytics and timeout sweeps scan by creation time
        Index("ix_routing_decisions_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RoutingDecisionRecord id={self.id} {self.provider}/{self.model} "
            f"status={self.status}>"
        )

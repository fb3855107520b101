"""Create the routing_decisions ledger table.

Revision ID: 001
Revises:
Create Date: 2026-10-18

Adds:
- routing_decisions (one row per routed request, updated only by status
  transitions)
  - id VARCHAR(36) PK, version INTEGER (compare-and-set counter)
  - request: request_type, service_level, token estimates, emergency,
    user tier and region
  - routing: provider, model, endpoint, decision_kind, routing_reason,
    step_down_percentage, alternatives JSON, fallback provider/model
  - outcome: status, estimated/actual cost, tokens, confidence,
    cost_efficiency, user_feedback, duration, retry_count, error
  - timestamps: created_at, started_at, completed_at, last_retry_at
  - metadata JSON

Indexes:
- ix_routing_decisions_user_type_time          (user_id, request_type, created_at)
- ix_routing_decisions_level_provider_model    (service_level, provider, model)
- ix_routing_decisions_kind_status             (decision_kind, status)
- ix_routing_decisions_created_at              (created_at)
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "routing_decisions",
        sa.Column("id", sa.String(36), primary_key=True, nullable=False),
        sa.Column(
            "version",
            sa.Integer(),
            nullable=False,
            server_default="0",
            comment="Bumped on every update; writers compare-and-set on it",
        ),
        sa.Column("request_id", sa.String(100), nullable=True),
        sa.Column(
            "user_id",
            sa.String(100),
            nullable=True,
            comment="May be null for anonymous requests",
        ),
        sa.Column("session_id", sa.String(100), nullable=True),
        # Request
        sa.Column("request_type", sa.String(50), nullable=False),
        sa.Column(
            "service_level",
            sa.String(20),
            nullable=False,
            comment="critical | standard",
        ),
        sa.Column("context_tokens", sa.Integer(), nullable=True),
        sa.Column("max_response_tokens", sa.Integer(), nullable=True),
        sa.Column("emergency", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("user_tier", sa.String(50), nullable=True),
        sa.Column("user_region", sa.String(10), nullable=True),
        # Routing
        sa.Column("provider", sa.String(50), nullable=True),
        sa.Column("model", sa.String(100), nullable=True),
        sa.Column("endpoint", sa.String(500), nullable=True),
        sa.Column("decision_kind", sa.String(40), nullable=False),
        sa.Column("routing_reason", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "step_down_percentage",
            sa.Integer(),
            nullable=True,
            comment="Quota percentage the selection succeeded at",
        ),
        sa.Column("alternatives", sa.JSON(), nullable=False),
        sa.Column("fallback_provider", sa.String(50), nullable=True),
        sa.Column("fallback_model", sa.String(100), nullable=True),
        sa.Column("quota_remaining", sa.Integer(), nullable=True),
        sa.Column("model_accuracy", sa.Float(), nullable=True),
        sa.Column("rate_limit_hit", sa.Boolean(), nullable=False, server_default=sa.false()),
        # Outcome
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default="pending",
            comment="pending | processing | completed | failed | cancelled | timeout",
        ),
        sa.Column("estimated_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("actual_cost", sa.Float(), nullable=True),
        sa.Column("response_tokens", sa.Integer(), nullable=True),
        sa.Column("total_tokens", sa.Integer(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("cost_efficiency", sa.Float(), nullable=True),
        sa.Column("user_feedback", sa.Float(), nullable=True),
        sa.Column("processing_duration_ms", sa.Integer(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        # Timestamps
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
    )

    op.create_index(
        "ix_routing_decisions_user_type_time",
        "routing_decisions",
        ["user_id", "request_type", "created_at"],
    )
    op.create_index(
        "ix_routing_decisions_level_provider_model",
        "routing_decisions",
        ["service_level", "provider", "model"],
    )
    op.create_index(
        "ix_routing_decisions_kind_status",
        "routing_decisions",
        ["decision_kind", "status"],
    )
    # Analytics windows and timeout sweeps scan by creation time
    op.create_index(
        "ix_routing_decisions_created_at",
        "routing_decisions",
        ["created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_routing_decisions_created_at", table_name="routing_decisions")
    op.drop_index("ix_routing_decisions_kind_status", table_name="routing_decisions")
    op.drop_index("ix_routing_decisions_level_provider_model", table_name="routing_decisions")
    op.drop_index("ix_routing_decisions_user_type_time", table_name="routing_decisions")
    op.drop_table("routing_decisions")

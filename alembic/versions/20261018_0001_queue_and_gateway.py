"""Create job queue, dead letter, and LLM gateway tables."""

from __future__ import annotations

from datetime import UTC, datetime

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None

_DEFAULT_ENGINES = (
    ("deal_analysis", "deal_analysis_queue", 3, 60),
    ("document_analysis", "document_analysis_queue", 5, 120),
    ("strategy_change", "strategy_change_queue", 1, 30),
    ("note_analysis", "note_analysis_queue", 2, 60),
)


def upgrade() -> None:
    engine_registry = op.create_table(
        "engine_registry",
        sa.Column("engine_id", sa.String(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("max_concurrency", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("job_ttl_minutes", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("feature_flag", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("engine_id"),
    )
    op.create_index("ix_engine_registry_queue_name", "engine_registry", ["queue_name"])
    op.create_index("ix_engine_registry_enabled", "engine_registry", ["enabled"])

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("engine", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("trigger_reason", sa.String(), nullable=False),
        sa.Column("related_ids_json", sa.Text(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False, server_default="normal"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_jobs_queue_name", "jobs", ["queue_name"])
    op.create_index("ix_jobs_tenant_id", "jobs", ["tenant_id"])
    op.create_index("ix_jobs_engine", "jobs", ["engine"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_idempotency_key", "jobs", ["idempotency_key"])
    op.create_index(
        "idx_jobs_claim",
        "jobs",
        ["queue_name", "status", "scheduled_for", "created_at"],
    )
    op.create_index(
        "uq_jobs_idempotency_fresh_queued",
        "jobs",
        ["idempotency_key"],
        unique=True,
        sqlite_where=sa.text("status = 'queued' AND retry_count = 0"),
    )

    op.create_table(
        "processing_locks",
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("queue_name"),
    )

    op.create_table(
        "dead_letter_queue",
        sa.Column("dlq_id", sa.String(), nullable=False),
        sa.Column("original_job_id", sa.String(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("engine", sa.String(), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=False),
        sa.Column("original_payload_json", sa.Text(), nullable=False),
        sa.Column("failure_context_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("replayed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("replay_job_id", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("dlq_id"),
    )
    op.create_index(
        "ix_dead_letter_queue_original_job_id",
        "dead_letter_queue",
        ["original_job_id"],
    )
    op.create_index("ix_dead_letter_queue_queue_name", "dead_letter_queue", ["queue_name"])
    op.create_index("ix_dead_letter_queue_tenant_id", "dead_letter_queue", ["tenant_id"])

    op.create_table(
        "llm_cache",
        sa.Column("cache_key", sa.String(), nullable=False),
        sa.Column("model_id", sa.String(), nullable=False),
        sa.Column("model_version", sa.String(), nullable=False),
        sa.Column("prompt_hash", sa.String(), nullable=False),
        sa.Column("content_hash", sa.String(), nullable=False),
        sa.Column("response_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("cache_key"),
    )
    op.create_index("ix_llm_cache_model_id", "llm_cache", ["model_id"])

    op.create_table(
        "cost_ledger",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("deal_id", sa.String(), nullable=True),
        sa.Column("fund_id", sa.String(), nullable=True),
        sa.Column("execution_id", sa.String(), nullable=True),
        sa.Column("agent_name", sa.String(), nullable=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("model_id", sa.String(), nullable=False),
        sa.Column("prompt_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completion_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("total_cost >= 0", name="ck_cost_ledger_non_negative"),
    )
    op.create_index("idx_cost_ledger_deal_time", "cost_ledger", ["deal_id", "created_at"])
    op.create_index("ix_cost_ledger_fund_id", "cost_ledger", ["fund_id"])
    op.create_index("ix_cost_ledger_created_at", "cost_ledger", ["created_at"])

    op.create_table(
        "rate_limit_buckets",
        sa.Column("bucket_id", sa.String(), nullable=False),
        sa.Column("requests_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_reset", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("bucket_id"),
    )

    op.create_table(
        "ops_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("model_id", sa.String(), nullable=True),
        sa.Column("bucket", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_ops_events_type_time", "ops_events", ["event_type", "created_at"])

    seeded_at = datetime.now(tz=UTC).replace(tzinfo=None)
    op.bulk_insert(
        engine_registry,
        [
            {
                "engine_id": engine_id,
                "queue_name": queue_name,
                "max_concurrency": max_concurrency,
                "job_ttl_minutes": job_ttl_minutes,
                "enabled": True,
                "feature_flag": None,
                "updated_at": seeded_at,
            }
            for engine_id, queue_name, max_concurrency, job_ttl_minutes in _DEFAULT_ENGINES
        ],
    )


def downgrade() -> None:
    op.drop_index("idx_ops_events_type_time", table_name="ops_events")
    op.drop_table("ops_events")
    op.drop_table("rate_limit_buckets")
    op.drop_index("ix_cost_ledger_created_at", table_name="cost_ledger")
    op.drop_index("ix_cost_ledger_fund_id", table_name="cost_ledger")
    op.drop_index("idx_cost_ledger_deal_time", table_name="cost_ledger")
    op.drop_table("cost_ledger")
    op.drop_index("ix_llm_cache_model_id", table_name="llm_cache")
    op.drop_table("llm_cache")
    op.drop_index("ix_dead_letter_queue_tenant_id", table_name="dead_letter_queue")
    op.drop_index("ix_dead_letter_queue_queue_name", table_name="dead_letter_queue")
    op.drop_index("ix_dead_letter_queue_original_job_id", table_name="dead_letter_queue")
    op.drop_table("dead_letter_queue")
    op.drop_table("processing_locks")
    op.drop_index("uq_jobs_idempotency_fresh_queued", table_name="jobs")
    op.drop_index("idx_jobs_claim", table_name="jobs")
    op.drop_index("ix_jobs_idempotency_key", table_name="jobs")
    op.drop_index("ix_jobs_status", table_name="jobs")
    op.drop_index("ix_jobs_engine", table_name="jobs")
    op.drop_index("ix_jobs_tenant_id", table_name="jobs")
    op.drop_index("ix_jobs_queue_name", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("ix_engine_registry_enabled", table_name="engine_registry")
    op.drop_index("ix_engine_registry_queue_name", table_name="engine_registry")
    op.drop_table("engine_registry")

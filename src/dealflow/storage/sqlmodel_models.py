"""SQLModel ORM tables for the job queue and LLM gateway."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, text
from sqlmodel import Field, SQLModel


class EngineRegistryEntry(SQLModel, table=True):
    __tablename__ = "engine_registry"  # type: ignore[bad-override]

    engine_id: str = Field(primary_key=True)
    queue_name: str = Field(index=True)
    max_concurrency: int = Field(default=1)
    job_ttl_minutes: int = Field(default=60)
    enabled: bool = Field(default=True, index=True)
    feature_flag: str | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_claim", "queue_name", "status", "scheduled_for", "created_at"),
        Index(
            "uq_jobs_idempotency_fresh_queued",
            "idempotency_key",
            unique=True,
            sqlite_where=text("status = 'queued' AND retry_count = 0"),
        ),
    )

    job_id: str = Field(primary_key=True)
    queue_name: str = Field(index=True)
    tenant_id: str = Field(index=True)
    engine: str = Field(index=True)
    source: str
    trigger_reason: str
    related_ids_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    priority: str = Field(default="normal")
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    idempotency_key: str = Field(index=True)
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    scheduled_for: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProcessingLock(SQLModel, table=True):
    __tablename__ = "processing_locks"  # type: ignore[bad-override]

    queue_name: str = Field(primary_key=True)
    worker_id: str
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DeadLetterEntry(SQLModel, table=True):
    __tablename__ = "dead_letter_queue"  # type: ignore[bad-override]

    dlq_id: str = Field(primary_key=True)
    original_job_id: str = Field(index=True)
    queue_name: str = Field(index=True)
    tenant_id: str = Field(index=True)
    engine: str
    failure_reason: str = Field(sa_column=Column(Text, nullable=False))
    original_payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    failure_context_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    replayed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    replay_job_id: str | None = None


class LlmCacheEntry(SQLModel, table=True):
    __tablename__ = "llm_cache"  # type: ignore[bad-override]

    cache_key: str = Field(primary_key=True)
    model_id: str = Field(index=True)
    model_version: str
    prompt_hash: str
    content_hash: str
    response_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CostLedgerEntry(SQLModel, table=True):
    __tablename__ = "cost_ledger"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_cost_ledger_deal_time", "deal_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    deal_id: str | None = None
    fund_id: str | None = Field(default=None, index=True)
    execution_id: str | None = None
    agent_name: str | None = None
    provider: str
    model_id: str
    prompt_tokens: int = Field(default=0)
    completion_tokens: int = Field(default=0)
    total_cost: float = Field(default=0.0)
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class RateLimitBucket(SQLModel, table=True):
    __tablename__ = "rate_limit_buckets"  # type: ignore[bad-override]

    bucket_id: str = Field(primary_key=True)
    requests_count: int = Field(default=0)
    last_reset: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OpsEvent(SQLModel, table=True):
    __tablename__ = "ops_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_ops_events_type_time", "event_type", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    event_type: str
    provider: str | None = None
    model_id: str | None = None
    bucket: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

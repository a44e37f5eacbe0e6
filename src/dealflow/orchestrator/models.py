"""Domain models for the engine job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class JobSource(str, Enum):
    """Who asked for the job."""

    USER = "user"
    SCHEDULER = "scheduler"
    EVENT = "event"


class JobPriority(str, Enum):
    """Informational priority carried with each job."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class EngineAvailability(str, Enum):
    """Registry lookup outcome for an engine id."""

    ENABLED = "enabled"
    DISABLED = "disabled"
    UNKNOWN = "unknown"


RELATED_ID_NAMES: tuple[str, ...] = ("deal_id", "strategy_id", "document_id", "note_id")


@dataclass(slots=True, frozen=True)
class EngineConfig:
    """Queue and limits configured for one class of work."""

    engine_id: str
    queue_name: str
    max_concurrency: int
    job_ttl_minutes: int
    enabled: bool = True
    feature_flag: str | None = None


@dataclass(slots=True)
class QueueJobOptions:
    """Optional knobs for a job submission."""

    source: JobSource = JobSource.USER
    delay_minutes: int = 0
    priority: JobPriority = JobPriority.NORMAL
    max_retries: int | None = None


@dataclass(slots=True)
class JobCreate:
    """Row payload for inserting a queued job."""

    job_id: str
    queue_name: str
    tenant_id: str
    engine: str
    source: JobSource
    trigger_reason: str
    related_ids: dict[str, str]
    priority: JobPriority
    max_retries: int
    idempotency_key: str
    payload: dict[str, Any]
    scheduled_for: datetime
    expires_at: datetime


@dataclass(slots=True)
class JobView:
    """Readable job view for the manager, CLI and HTTP layer."""

    job_id: str
    queue_name: str
    tenant_id: str
    engine: str
    source: JobSource
    trigger_reason: str
    related_ids: dict[str, str]
    priority: JobPriority
    retry_count: int
    max_retries: int
    idempotency_key: str
    payload: dict[str, Any]
    status: JobStatus
    scheduled_for: datetime
    expires_at: datetime
    error_message: str | None
    worker_id: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "queue_name": self.queue_name,
            "tenant_id": self.tenant_id,
            "engine": self.engine,
            "source": self.source.value,
            "trigger_reason": self.trigger_reason,
            "related_ids": dict(self.related_ids),
            "priority": self.priority.value,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "idempotency_key": self.idempotency_key,
            "payload": dict(self.payload),
            "status": self.status.value,
            "scheduled_for": self.scheduled_for.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "error_message": self.error_message,
            "worker_id": self.worker_id,
            "created_at": self.created_at.isoformat(),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class EnqueueOutcome:
    """Repository result of the atomic check-then-insert."""

    job_id: str
    duplicate: bool


@dataclass(slots=True)
class QueueJobResult:
    """Submission result returned to callers."""

    success: bool
    job_id: str | None = None
    duplicate: bool = False
    error: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class ProcessQueueResult:
    """Outcome of one processing pass over a queue."""

    success: bool
    queue_name: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    lock_acquired: bool = True
    error: str | None = None


@dataclass(slots=True)
class DeadLetterView:
    """Dead-lettered job snapshot."""

    dlq_id: str
    original_job_id: str
    queue_name: str
    tenant_id: str
    engine: str
    failure_reason: str
    original_payload: dict[str, Any]
    failure_context: dict[str, Any]
    created_at: datetime
    replayed_at: datetime | None
    replay_job_id: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "dlq_id": self.dlq_id,
            "original_job_id": self.original_job_id,
            "queue_name": self.queue_name,
            "tenant_id": self.tenant_id,
            "engine": self.engine,
            "failure_reason": self.failure_reason,
            "original_payload": dict(self.original_payload),
            "failure_context": dict(self.failure_context),
            "created_at": self.created_at.isoformat(),
            "replayed_at": _iso(self.replayed_at),
            "replay_job_id": self.replay_job_id,
        }


@dataclass(slots=True)
class CleanupSummary:
    """Counts produced by one maintenance sweep."""

    expired_jobs: int = 0
    released_locks: int = 0
    purged_completed: int = 0
    recovered_stuck: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "expired_jobs": self.expired_jobs,
            "released_locks": self.released_locks,
            "purged_completed": self.purged_completed,
            "recovered_stuck": self.recovered_stuck,
        }


@dataclass(slots=True)
class QueueStats:
    """Job counts grouped by status and by engine."""

    by_status: dict[str, int] = field(default_factory=dict)
    by_engine: dict[str, dict[str, int]] = field(default_factory=dict)
    dead_letters: int = 0

    @property
    def total(self) -> int:
        return sum(self.by_status.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "by_engine": {engine: dict(counts) for engine, counts in self.by_engine.items()},
            "dead_letters": self.dead_letters,
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None

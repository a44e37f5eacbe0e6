"""Persistent job queue, processing locks and dead letters on SQLModel + SQLite."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, delete, select

from dealflow.orchestrator.models import (
    DeadLetterView,
    EngineConfig,
    EnqueueOutcome,
    JobCreate,
    JobPriority,
    JobSource,
    JobStatus,
    JobView,
    QueueStats,
)
from dealflow.storage.alembic_runner import upgrade_head
from dealflow.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from dealflow.storage.sqlmodel_models import (
    DeadLetterEntry,
    EngineRegistryEntry,
    Job,
    ProcessingLock,
)


class QueueRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every state transition is a conditional ``UPDATE`` on the expected current
    status; callers get ``False`` back when another writer won the race.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Engine registry source

    def load_engine_configs(self) -> list[EngineConfig]:
        with Session(self.engine) as session:
            rows = session.exec(select(EngineRegistryEntry)).all()
            return [_to_engine_config(row) for row in rows]

    def save_engine_config(self, config: EngineConfig) -> None:
        now = to_db_datetime(utc_now())
        values = {
            "engine_id": config.engine_id,
            "queue_name": config.queue_name,
            "max_concurrency": config.max_concurrency,
            "job_ttl_minutes": config.job_ttl_minutes,
            "enabled": config.enabled,
            "feature_flag": config.feature_flag,
            "updated_at": now,
        }
        statement = sqlite_insert(EngineRegistryEntry).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=["engine_id"],
            set_={key: value for key, value in values.items() if key != "engine_id"},
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()

    # Jobs

    def enqueue_job(self, payload: JobCreate, *, now: datetime) -> EnqueueOutcome:
        """Insert a queued job unless one with the same key is already queued.

        The partial unique index on fresh queued jobs turns a lost race into an
        ``IntegrityError``, after which the winner's id is returned.
        """

        with Session(self.engine) as session:
            existing = _find_queued_by_key(session, payload.idempotency_key)
            if existing is not None:
                return EnqueueOutcome(job_id=existing, duplicate=True)

            session.add(_to_job_row(payload, now=now))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = _find_queued_by_key(session, payload.idempotency_key)
                if existing is None:
                    raise
                return EnqueueOutcome(job_id=existing, duplicate=True)
            return EnqueueOutcome(job_id=payload.job_id, duplicate=False)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        queue_name: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        statement = select(Job)
        if status is not None:
            statement = statement.where(Job.status == status.value)
        if queue_name is not None:
            statement = statement.where(Job.queue_name == queue_name)
        statement = statement.order_by(col(Job.created_at).desc()).limit(limit)
        with Session(self.engine) as session:
            return [_to_job_view(row) for row in session.exec(statement).all()]

    def claim_due_jobs(self, *, queue_name: str, now: datetime, limit: int) -> list[JobView]:
        """Select up to ``limit`` due, unexpired queued jobs, oldest first."""

        db_now = to_db_datetime(now)
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    Job.queue_name == queue_name,
                    Job.status == JobStatus.QUEUED.value,
                    col(Job.scheduled_for) <= db_now,
                    col(Job.expires_at) > db_now,
                )
                .order_by(col(Job.created_at).asc(), col(Job.job_id).asc())
                .limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def mark_processing(self, *, job_id: str, worker_id: str, now: datetime) -> bool:
        return self._transition(
            job_id=job_id,
            expected=JobStatus.QUEUED,
            values={
                "status": JobStatus.PROCESSING.value,
                "started_at": to_db_datetime(now),
                "worker_id": worker_id,
                "updated_at": to_db_datetime(now),
            },
        )

    def mark_completed(self, *, job_id: str, now: datetime) -> bool:
        return self._transition(
            job_id=job_id,
            expected=JobStatus.PROCESSING,
            values={
                "status": JobStatus.COMPLETED.value,
                "completed_at": to_db_datetime(now),
                "error_message": None,
                "updated_at": to_db_datetime(now),
            },
        )

    def schedule_retry(
        self,
        *,
        job_id: str,
        retry_count: int,
        scheduled_for: datetime,
        error_message: str,
        now: datetime,
    ) -> bool:
        """Return a processing job to the queue with a later due time."""

        return self._transition(
            job_id=job_id,
            expected=JobStatus.PROCESSING,
            values={
                "status": JobStatus.QUEUED.value,
                "retry_count": retry_count,
                "scheduled_for": to_db_datetime(scheduled_for),
                "error_message": error_message,
                "worker_id": None,
                "updated_at": to_db_datetime(now),
            },
        )

    def mark_failed(
        self,
        *,
        job_id: str,
        retry_count: int,
        error_message: str,
        now: datetime,
    ) -> bool:
        return self._transition(
            job_id=job_id,
            expected=JobStatus.PROCESSING,
            values={
                "status": JobStatus.FAILED.value,
                "retry_count": retry_count,
                "error_message": error_message,
                "completed_at": to_db_datetime(now),
                "updated_at": to_db_datetime(now),
            },
        )

    def dead_letter_job(
        self,
        *,
        job: JobView,
        retry_count: int,
        failure_reason: str,
        failure_context: dict[str, Any],
        now: datetime,
    ) -> str | None:
        """Fail a processing job and snapshot it into the dead letter queue.

        Both writes share one transaction. Returns the new dead letter id, or
        ``None`` when the job was no longer processing.
        """

        dlq_id = str(uuid4())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job.job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    retry_count=retry_count,
                    error_message=failure_reason,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.add(
                DeadLetterEntry(
                    dlq_id=dlq_id,
                    original_job_id=job.job_id,
                    queue_name=job.queue_name,
                    tenant_id=job.tenant_id,
                    engine=job.engine,
                    failure_reason=failure_reason,
                    original_payload_json=dump_json(job.payload),
                    failure_context_json=dump_json(failure_context),
                    created_at=to_db_datetime(now),
                ),
            )
            session.commit()
        return dlq_id

    def expire_overdue_jobs(self, *, now: datetime) -> int:
        db_now = to_db_datetime(now)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.status) == JobStatus.QUEUED.value,
                    col(Job.expires_at) < db_now,
                )
                .values(
                    status=JobStatus.EXPIRED.value,
                    completed_at=db_now,
                    updated_at=db_now,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def purge_completed_jobs(self, *, older_than: datetime) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                delete(Job).where(
                    col(Job.status) == JobStatus.COMPLETED.value,
                    col(Job.completed_at) < to_db_datetime(older_than),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def find_stuck_jobs(self, *, started_before: datetime) -> list[JobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.PROCESSING.value,
                    col(Job.started_at) < to_db_datetime(started_before),
                )
                .order_by(col(Job.started_at).asc()),
            ).all()
            return [_to_job_view(row) for row in rows]

    def queue_stats(self) -> QueueStats:
        stats = QueueStats()
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.engine, Job.status, func.count()).group_by(Job.engine, Job.status),
            ).all()
            for engine, status, count in rows:
                stats.by_status[status] = stats.by_status.get(status, 0) + int(count)
                stats.by_engine.setdefault(engine, {})[status] = int(count)
            stats.dead_letters = int(
                session.exec(select(func.count()).select_from(DeadLetterEntry)).one(),
            )
        return stats

    # Processing locks

    def acquire_lock(
        self,
        *,
        queue_name: str,
        worker_id: str,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        """Take the queue lock unless a live lock exists.

        An expired lock for the queue is removed in the same transaction, so
        the primary key on ``queue_name`` decides between racing workers.
        """

        db_now = to_db_datetime(now)
        with Session(self.engine) as session:
            session.exec(
                delete(ProcessingLock).where(
                    col(ProcessingLock.queue_name) == queue_name,
                    col(ProcessingLock.expires_at) <= db_now,
                ),
            )
            session.add(
                ProcessingLock(
                    queue_name=queue_name,
                    worker_id=worker_id,
                    acquired_at=db_now,
                    expires_at=to_db_datetime(expires_at),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def release_lock(self, *, queue_name: str, worker_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                delete(ProcessingLock).where(
                    col(ProcessingLock.queue_name) == queue_name,
                    col(ProcessingLock.worker_id) == worker_id,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def delete_expired_locks(self, *, now: datetime) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                delete(ProcessingLock).where(
                    col(ProcessingLock.expires_at) <= to_db_datetime(now),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def get_lock_holder(self, queue_name: str) -> str | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ProcessingLock).where(ProcessingLock.queue_name == queue_name),
            ).one_or_none()
            return row.worker_id if row is not None else None

    # Dead letters

    def list_dead_letters(
        self,
        *,
        queue_name: str | None = None,
        include_replayed: bool = True,
        limit: int = 50,
    ) -> list[DeadLetterView]:
        statement = select(DeadLetterEntry)
        if queue_name is not None:
            statement = statement.where(DeadLetterEntry.queue_name == queue_name)
        if not include_replayed:
            statement = statement.where(col(DeadLetterEntry.replayed_at).is_(None))
        statement = statement.order_by(col(DeadLetterEntry.created_at).desc()).limit(limit)
        with Session(self.engine) as session:
            return [_to_dead_letter_view(row) for row in session.exec(statement).all()]

    def get_dead_letter(self, dlq_id: str) -> DeadLetterView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(DeadLetterEntry).where(DeadLetterEntry.dlq_id == dlq_id),
            ).one_or_none()
            return _to_dead_letter_view(row) if row is not None else None

    def count_dead_letters(self, *, original_job_id: str) -> int:
        with Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(DeadLetterEntry)
                    .where(DeadLetterEntry.original_job_id == original_job_id),
                ).one(),
            )

    def replay_dead_letter(
        self,
        *,
        dlq_id: str,
        payload: JobCreate,
        now: datetime,
    ) -> EnqueueOutcome | None:
        """Stamp a dead letter as replayed and enqueue its replacement job.

        Returns ``None`` when the entry is missing or was already replayed.
        """

        with Session(self.engine) as session:
            existing = _find_queued_by_key(session, payload.idempotency_key)
            outcome = EnqueueOutcome(
                job_id=existing or payload.job_id,
                duplicate=existing is not None,
            )
            result = session.exec(
                sa_update(DeadLetterEntry)
                .where(
                    col(DeadLetterEntry.dlq_id) == dlq_id,
                    col(DeadLetterEntry.replayed_at).is_(None),
                )
                .values(
                    replayed_at=to_db_datetime(now),
                    replay_job_id=outcome.job_id,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            if not outcome.duplicate:
                session.add(_to_job_row(payload, now=now))
            session.commit()
            return outcome

    def _transition(self, *, job_id: str, expected: JobStatus, values: dict[str, Any]) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == expected.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _find_queued_by_key(session: Session, key: str) -> str | None:
    return session.exec(
        select(Job.job_id)
        .where(
            Job.idempotency_key == key,
            Job.status == JobStatus.QUEUED.value,
        )
        .order_by(col(Job.created_at).asc())
        .limit(1),
    ).first()


def _to_job_row(payload: JobCreate, *, now: datetime) -> Job:
    db_now = to_db_datetime(now)
    return Job(
        job_id=payload.job_id,
        queue_name=payload.queue_name,
        tenant_id=payload.tenant_id,
        engine=payload.engine,
        source=payload.source.value,
        trigger_reason=payload.trigger_reason,
        related_ids_json=dump_json(payload.related_ids),
        priority=payload.priority.value,
        retry_count=0,
        max_retries=payload.max_retries,
        idempotency_key=payload.idempotency_key,
        payload_json=dump_json(payload.payload),
        status=JobStatus.QUEUED.value,
        scheduled_for=to_db_datetime(payload.scheduled_for),
        expires_at=to_db_datetime(payload.expires_at),
        created_at=db_now,
        updated_at=db_now,
    )


def _to_engine_config(row: EngineRegistryEntry) -> EngineConfig:
    return EngineConfig(
        engine_id=row.engine_id,
        queue_name=row.queue_name,
        max_concurrency=row.max_concurrency,
        job_ttl_minutes=row.job_ttl_minutes,
        enabled=bool(row.enabled),
        feature_flag=row.feature_flag,
    )


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        queue_name=row.queue_name,
        tenant_id=row.tenant_id,
        engine=row.engine,
        source=JobSource(row.source),
        trigger_reason=row.trigger_reason,
        related_ids={key: str(value) for key, value in json.loads(row.related_ids_json).items()},
        priority=JobPriority(row.priority),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        idempotency_key=row.idempotency_key,
        payload=load_json_object(row.payload_json),
        status=JobStatus(row.status),
        scheduled_for=to_utc_aware_datetime(row.scheduled_for),
        expires_at=to_utc_aware_datetime(row.expires_at),
        error_message=row.error_message,
        worker_id=row.worker_id,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_dead_letter_view(row: DeadLetterEntry) -> DeadLetterView:
    return DeadLetterView(
        dlq_id=row.dlq_id,
        original_job_id=row.original_job_id,
        queue_name=row.queue_name,
        tenant_id=row.tenant_id,
        engine=row.engine,
        failure_reason=row.failure_reason,
        original_payload=load_json_object(row.original_payload_json),
        failure_context=load_json_object(row.failure_context_json),
        created_at=to_utc_aware_datetime(row.created_at),
        replayed_at=optional_utc(row.replayed_at),
        replay_job_id=row.replay_job_id,
    )

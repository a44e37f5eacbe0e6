"""Job queue manager: submission, processing passes, retries and cleanup."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from dealflow.config import QueueSettings
from dealflow.errors import EngineNotFoundOrDisabled, QueueNotConfigured
from dealflow.orchestrator.engines import EngineDispatcher
from dealflow.orchestrator.keys import idempotency_key
from dealflow.orchestrator.models import (
    CleanupSummary,
    DeadLetterView,
    EngineAvailability,
    EngineConfig,
    JobCreate,
    JobSource,
    JobView,
    ProcessQueueResult,
    QueueJobOptions,
    QueueJobResult,
    QueueStats,
)
from dealflow.orchestrator.registry import EngineRegistry
from dealflow.orchestrator.repository import QueueRepository
from dealflow.storage.common import utc_now

logger = logging.getLogger(__name__)

REPLAY_REASON_PREFIX = "dlq_replay:"


class QueueManager:
    """Accept, schedule, process and dead-letter engine jobs."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: QueueRepository,
        registry: EngineRegistry,
        dispatcher: EngineDispatcher,
        settings: QueueSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
        pause: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.dispatcher = dispatcher
        self.settings = settings or QueueSettings()
        self._clock = clock
        self._pause = pause

    def queue_job(  # noqa: PLR0913
        self,
        *,
        engine_id: str,
        tenant_id: str,
        trigger_reason: str,
        related_ids: Mapping[str, str | None] | None = None,
        payload: Mapping[str, Any] | None = None,
        options: QueueJobOptions | None = None,
    ) -> QueueJobResult:
        """Submit a job, collapsing duplicates of an already queued one."""

        options = options or QueueJobOptions()
        engine = self.registry.get(engine_id)
        if engine is None:
            disabled = self.registry.availability(engine_id) is EngineAvailability.DISABLED
            error = EngineNotFoundOrDisabled(engine_id, disabled=disabled)
            logger.warning("Rejected job for tenant %s: %s", tenant_id, error)
            return QueueJobResult(
                success=False,
                error=str(error),
                reason="engine_disabled" if disabled else "unknown_engine",
            )
        if options.delay_minutes < 0:
            return QueueJobResult(
                success=False,
                error="delay_minutes must be >= 0.",
                reason="invalid_request",
            )

        now = self._clock()
        related = {
            name: str(value)
            for name, value in (related_ids or {}).items()
            if value not in (None, "")
        }
        create = JobCreate(
            job_id=str(uuid4()),
            queue_name=engine.queue_name,
            tenant_id=tenant_id,
            engine=engine.engine_id,
            source=options.source,
            trigger_reason=trigger_reason,
            related_ids=related,
            priority=options.priority,
            max_retries=(
                options.max_retries
                if options.max_retries is not None
                else self.settings.default_max_retries
            ),
            idempotency_key=idempotency_key(
                engine_id=engine.engine_id,
                tenant_id=tenant_id,
                related_ids=related,
                trigger_reason=trigger_reason,
                now=now,
            ),
            payload=dict(payload or {}),
            scheduled_for=now + timedelta(minutes=options.delay_minutes),
            expires_at=now + timedelta(minutes=engine.job_ttl_minutes),
        )
        outcome = self.repository.enqueue_job(create, now=now)
        if outcome.duplicate:
            logger.info(
                "Duplicate %s submission for tenant %s absorbed into job %s",
                engine.engine_id,
                tenant_id,
                outcome.job_id,
            )
        else:
            logger.info(
                "Queued %s job %s on %s (tenant=%s, source=%s)",
                engine.engine_id,
                outcome.job_id,
                engine.queue_name,
                tenant_id,
                options.source.value,
            )
        return QueueJobResult(success=True, job_id=outcome.job_id, duplicate=outcome.duplicate)

    def process_queue(self, queue_name: str, worker_id: str) -> ProcessQueueResult:
        """Run one processing pass over a queue under its processing lock."""

        engine = self.registry.for_queue(queue_name)
        if engine is None:
            logger.error("No engine configured for queue %s", queue_name)
            return ProcessQueueResult(
                success=False,
                queue_name=queue_name,
                error=str(QueueNotConfigured(queue_name)),
            )

        now = self._clock()
        acquired = self.repository.acquire_lock(
            queue_name=queue_name,
            worker_id=worker_id,
            now=now,
            expires_at=now + timedelta(seconds=self.settings.lock_ttl_seconds),
        )
        if not acquired:
            logger.info("Queue %s is locked by another worker; %s skips", queue_name, worker_id)
            return ProcessQueueResult(success=True, queue_name=queue_name, lock_acquired=False)

        result = ProcessQueueResult(success=True, queue_name=queue_name)
        try:
            jobs = self.repository.claim_due_jobs(
                queue_name=queue_name,
                now=now,
                limit=engine.max_concurrency,
            )
            for index, job in enumerate(jobs):
                if index and self.settings.inter_job_pause_seconds > 0:
                    self._pause(self.settings.inter_job_pause_seconds)
                self._process_job(job, worker_id=worker_id, result=result)
        finally:
            released = self.repository.release_lock(queue_name=queue_name, worker_id=worker_id)
            if not released:
                logger.warning("Lock on %s held by %s was already gone", queue_name, worker_id)

        logger.info(
            "Queue %s pass by %s: processed=%d failed=%d skipped=%d",
            queue_name,
            worker_id,
            result.processed,
            result.failed,
            result.skipped,
        )
        return result

    def cleanup(self) -> CleanupSummary:
        """Expire overdue jobs, drop stale locks, purge old completions, recover stuck jobs."""

        now = self._clock()
        summary = CleanupSummary(
            expired_jobs=self.repository.expire_overdue_jobs(now=now),
            released_locks=self.repository.delete_expired_locks(now=now),
            purged_completed=self.repository.purge_completed_jobs(
                older_than=now - timedelta(hours=self.settings.completed_retention_hours),
            ),
        )
        stuck = self.repository.find_stuck_jobs(
            started_before=now - timedelta(minutes=self.settings.stuck_processing_minutes),
        )
        for job in stuck:
            logger.warning(
                "Job %s stuck in processing since %s (worker=%s)",
                job.job_id,
                job.started_at,
                job.worker_id,
            )
            self._handle_job_failure(
                job,
                error_message=(
                    f"Processing exceeded {self.settings.stuck_processing_minutes} minutes "
                    f"on worker {job.worker_id or 'unknown'}"
                ),
            )
            summary.recovered_stuck += 1
        logger.info("Cleanup finished: %s", summary.to_dict())
        return summary

    def get_job(self, job_id: str) -> JobView | None:
        return self.repository.get_job(job_id)

    def queue_stats(self) -> QueueStats:
        return self.repository.queue_stats()

    def list_dead_letters(
        self,
        *,
        queue_name: str | None = None,
        limit: int = 50,
    ) -> list[DeadLetterView]:
        return self.repository.list_dead_letters(queue_name=queue_name, limit=limit)

    def replay_dead_letter(self, dlq_id: str) -> QueueJobResult:
        """Resubmit a dead-lettered job as a fresh event-sourced job."""

        entry = self.repository.get_dead_letter(dlq_id)
        if entry is None:
            return QueueJobResult(
                success=False,
                error=f"Dead letter not found: {dlq_id}",
                reason="not_found",
            )
        if entry.replayed_at is not None:
            return QueueJobResult(
                success=False,
                error=f"Dead letter {dlq_id} was already replayed as job {entry.replay_job_id}.",
                reason="already_replayed",
            )
        engine = self.registry.get(entry.engine)
        if engine is None:
            disabled = self.registry.availability(entry.engine) is EngineAvailability.DISABLED
            return QueueJobResult(
                success=False,
                error=str(EngineNotFoundOrDisabled(entry.engine, disabled=disabled)),
                reason="engine_disabled" if disabled else "unknown_engine",
            )

        now = self._clock()
        context = entry.failure_context
        original_reason = str(context.get("trigger_reason") or entry.failure_reason)
        trigger_reason = f"{REPLAY_REASON_PREFIX}{original_reason}"
        related = {
            str(name): str(value)
            for name, value in dict(context.get("related_ids") or {}).items()
            if value not in (None, "")
        }
        create = self._build_replay_job(
            engine=engine,
            entry=entry,
            trigger_reason=trigger_reason,
            related=related,
            now=now,
        )
        outcome = self.repository.replay_dead_letter(dlq_id=dlq_id, payload=create, now=now)
        if outcome is None:
            return QueueJobResult(
                success=False,
                error=f"Dead letter {dlq_id} was already replayed.",
                reason="already_replayed",
            )
        logger.info("Replayed dead letter %s as job %s", dlq_id, outcome.job_id)
        return QueueJobResult(success=True, job_id=outcome.job_id, duplicate=outcome.duplicate)

    def _build_replay_job(
        self,
        *,
        engine: EngineConfig,
        entry: DeadLetterView,
        trigger_reason: str,
        related: dict[str, str],
        now: datetime,
    ) -> JobCreate:
        return JobCreate(
            job_id=str(uuid4()),
            queue_name=engine.queue_name,
            tenant_id=entry.tenant_id,
            engine=engine.engine_id,
            source=JobSource.EVENT,
            trigger_reason=trigger_reason,
            related_ids=related,
            priority=QueueJobOptions().priority,
            max_retries=self.settings.default_max_retries,
            idempotency_key=idempotency_key(
                engine_id=engine.engine_id,
                tenant_id=entry.tenant_id,
                related_ids=related,
                trigger_reason=trigger_reason,
                now=now,
            ),
            payload=dict(entry.original_payload),
            scheduled_for=now,
            expires_at=now + timedelta(minutes=engine.job_ttl_minutes),
        )

    def _process_job(self, job: JobView, *, worker_id: str, result: ProcessQueueResult) -> None:
        if not self.repository.mark_processing(
            job_id=job.job_id,
            worker_id=worker_id,
            now=self._clock(),
        ):
            logger.info("Job %s left the queued state before %s claimed it", job.job_id, worker_id)
            result.skipped += 1
            return

        try:
            self.dispatcher.dispatch(job)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Job %s (%s) failed: %s", job.job_id, job.engine, exc)
            self._handle_job_failure(job, error_message=str(exc) or type(exc).__name__)
            result.failed += 1
            return

        if self.repository.mark_completed(job_id=job.job_id, now=self._clock()):
            result.processed += 1
            logger.info("Job %s (%s) completed", job.job_id, job.engine)
        else:
            logger.warning("Job %s finished but was no longer processing", job.job_id)
            result.skipped += 1

    def _handle_job_failure(self, job: JobView, *, error_message: str) -> None:
        """Requeue with exponential backoff, or dead-letter once retries run out."""

        now = self._clock()
        retry_count = job.retry_count + 1
        if retry_count <= job.max_retries:
            backoff_minutes = min(2**retry_count, self.settings.max_backoff_minutes)
            scheduled_for = now + timedelta(minutes=backoff_minutes)
            if self.repository.schedule_retry(
                job_id=job.job_id,
                retry_count=retry_count,
                scheduled_for=scheduled_for,
                error_message=error_message,
                now=now,
            ):
                logger.info(
                    "Job %s retry %d/%d scheduled in %d minute(s)",
                    job.job_id,
                    retry_count,
                    job.max_retries,
                    backoff_minutes,
                )
            else:
                logger.warning("Job %s could not be requeued; it left processing", job.job_id)
            return

        failure_context = {
            "retry_count": job.retry_count,
            "last_error": error_message,
            "failed_at": now.isoformat(),
            "related_ids": dict(job.related_ids),
            "trigger_reason": job.trigger_reason,
        }
        try:
            dlq_id = self.repository.dead_letter_job(
                job=job,
                retry_count=retry_count,
                failure_reason=error_message,
                failure_context=failure_context,
                now=now,
            )
        except SQLAlchemyError:
            logger.exception("Dead-lettering job %s failed; marking it failed", job.job_id)
            self.repository.mark_failed(
                job_id=job.job_id,
                retry_count=retry_count,
                error_message=f"dead letter write failed: {error_message}",
                now=now,
            )
            return

        if dlq_id is None:
            logger.warning("Job %s was no longer processing; not dead-lettered", job.job_id)
            return
        logger.error(
            "Job %s exhausted %d retries and moved to dead letter %s",
            job.job_id,
            job.max_retries,
            dlq_id,
        )

"""Controllers for job queue CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dealflow.config import Settings
from dealflow.orchestrator.models import (
    RELATED_ID_NAMES,
    EngineConfig,
    JobPriority,
    JobSource,
    JobStatus,
    QueueJobOptions,
)
from dealflow.runtime import open_runtime


@dataclass(slots=True)
class CliResult:
    """Lines to render plus the command's exit status."""

    lines: list[str]
    success: bool = True


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for job submission."""

    db_path: Path | None
    engine_id: str
    tenant_id: str
    trigger_reason: str
    related_ids: tuple[str, ...]
    payload_json: str | None
    source: str
    delay_minutes: int
    priority: str
    max_retries: int | None = None


@dataclass(slots=True)
class JobProcessCommand:
    """CLI input for one processing pass."""

    db_path: Path | None
    queue_name: str
    worker_id: str | None


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    queue_name: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str
    output_format: str = "table"


@dataclass(slots=True)
class QueueStatsCommand:
    """CLI input for queue statistics."""

    db_path: Path | None
    output_format: str = "table"


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for the maintenance sweep."""

    db_path: Path | None


@dataclass(slots=True)
class DeadLetterListCommand:
    """CLI input for dead letter listing."""

    db_path: Path | None
    queue_name: str | None
    limit: int


@dataclass(slots=True)
class DeadLetterReplayCommand:
    """CLI input for dead letter replay."""

    db_path: Path | None
    dlq_id: str


@dataclass(slots=True)
class EngineListCommand:
    """CLI input for engine listing."""

    db_path: Path | None


@dataclass(slots=True)
class EngineRegisterCommand:
    """CLI input for creating or updating an engine."""

    db_path: Path | None
    engine_id: str
    queue_name: str | None
    max_concurrency: int
    job_ttl_minutes: int
    enabled: bool
    feature_flag: str | None


class QueueCliController:
    """Coordinates job, dead letter and engine registry CLI operations."""

    def enqueue(self, command: JobEnqueueCommand) -> CliResult:
        related_ids = parse_related_ids(command.related_ids)
        payload = parse_payload(command.payload_json)
        settings = _settings(command.db_path)
        with open_runtime(settings) as runtime:
            result = runtime.manager.queue_job(
                engine_id=command.engine_id,
                tenant_id=command.tenant_id,
                trigger_reason=command.trigger_reason,
                related_ids=related_ids,
                payload=payload,
                options=QueueJobOptions(
                    source=JobSource(command.source),
                    delay_minutes=command.delay_minutes,
                    priority=JobPriority(command.priority),
                    max_retries=command.max_retries,
                ),
            )
        if not result.success:
            return CliResult(
                lines=[f"Job rejected ({result.reason}): {result.error}"],
                success=False,
            )
        state = "duplicate of queued job" if result.duplicate else "queued"
        return CliResult(lines=[f"Job {state}: job_id={result.job_id}"])

    def process(self, command: JobProcessCommand) -> CliResult:
        settings = _settings(command.db_path)
        worker_id = command.worker_id or settings.queue.default_worker_id
        with open_runtime(settings) as runtime:
            result = runtime.manager.process_queue(command.queue_name, worker_id)
        if not result.success:
            return CliResult(lines=[f"Queue pass failed: {result.error}"], success=False)
        if not result.lock_acquired:
            return CliResult(
                lines=[
                    f"Queue {command.queue_name} is being processed by another worker; "
                    "processed=0 failed=0",
                ],
            )
        return CliResult(
            lines=[
                f"Queue pass: queue={result.queue_name} worker={worker_id} "
                f"processed={result.processed} failed={result.failed} skipped={result.skipped}",
            ],
        )

    def list_jobs(self, command: JobListCommand) -> list[str]:
        status_filter = _parse_status(command.status)
        settings = _settings(command.db_path)
        with open_runtime(settings) as runtime:
            jobs = runtime.queue_repository.list_jobs(
                status=status_filter,
                queue_name=command.queue_name,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} engine={job.engine} tenant={job.tenant_id} "
                f"status={job.status.value} retries={job.retry_count}/{job.max_retries} "
                f"scheduled_for={job.scheduled_for.isoformat()}",
            )
        return lines

    def inspect(self, command: JobInspectCommand) -> CliResult:
        settings = _settings(command.db_path)
        with open_runtime(settings) as runtime:
            job = runtime.manager.get_job(command.job_id)
        if job is None:
            return CliResult(lines=[f"Job not found: {command.job_id}"], success=False)
        if command.output_format == "json":
            return CliResult(lines=[json.dumps(job.to_dict(), indent=2, ensure_ascii=False)])

        related = ", ".join(f"{name}={value}" for name, value in sorted(job.related_ids.items()))
        return CliResult(
            lines=[
                f"Job: {job.job_id}",
                f"Engine: {job.engine} (queue {job.queue_name})",
                f"Tenant: {job.tenant_id}",
                f"Status: {job.status.value}",
                f"Source: {job.source.value}",
                f"Trigger: {job.trigger_reason}",
                f"Related: {related or '-'}",
                f"Priority: {job.priority.value}",
                f"Retries: {job.retry_count}/{job.max_retries}",
                f"Scheduled for: {job.scheduled_for.isoformat()}",
                f"Expires at: {job.expires_at.isoformat()}",
                f"Error: {job.error_message or '-'}",
            ],
        )

    def stats(self, command: QueueStatsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with open_runtime(settings) as runtime:
            stats = runtime.manager.queue_stats()
        if command.output_format == "json":
            return [json.dumps(stats.to_dict(), indent=2, ensure_ascii=False)]

        lines = [f"Jobs total: {stats.total}"]
        for status in JobStatus:
            lines.append(f"  {status.value}: {stats.by_status.get(status.value, 0)}")
        for engine, counts in sorted(stats.by_engine.items()):
            rendered = " ".join(f"{name}={count}" for name, count in sorted(counts.items()))
            lines.append(f"  engine {engine}: {rendered}")
        lines.append(f"Dead letters: {stats.dead_letters}")
        return lines

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = _settings(command.db_path)
        with open_runtime(settings) as runtime:
            summary = runtime.manager.cleanup()
        return [
            "Cleanup: "
            f"expired_jobs={summary.expired_jobs} released_locks={summary.released_locks} "
            f"purged_completed={summary.purged_completed} "
            f"recovered_stuck={summary.recovered_stuck}",
        ]

    def list_dead_letters(self, command: DeadLetterListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with open_runtime(settings) as runtime:
            entries = runtime.manager.list_dead_letters(
                queue_name=command.queue_name,
                limit=command.limit,
            )
        lines = [f"Dead letters: {len(entries)}"]
        for entry in entries:
            replay = f" replayed_as={entry.replay_job_id}" if entry.replay_job_id else ""
            lines.append(
                f"  {entry.dlq_id} job={entry.original_job_id} engine={entry.engine} "
                f"tenant={entry.tenant_id} reason={entry.failure_reason}{replay}",
            )
        return lines

    def replay_dead_letter(self, command: DeadLetterReplayCommand) -> CliResult:
        settings = _settings(command.db_path)
        with open_runtime(settings) as runtime:
            result = runtime.manager.replay_dead_letter(command.dlq_id)
        if not result.success:
            return CliResult(
                lines=[f"Replay rejected ({result.reason}): {result.error}"],
                success=False,
            )
        return CliResult(lines=[f"Dead letter {command.dlq_id} replayed as job {result.job_id}"])

    def list_engines(self, command: EngineListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with open_runtime(settings) as runtime:
            engines = runtime.registry.list_engines()
        lines = [f"Engines: {len(engines)}"]
        for engine in engines:
            lines.append(
                f"  {engine.engine_id} queue={engine.queue_name} "
                f"max_concurrency={engine.max_concurrency} ttl={engine.job_ttl_minutes}m "
                f"enabled={'yes' if engine.enabled else 'no'} "
                f"flag={engine.feature_flag or '-'}",
            )
        return lines

    def register_engine(self, command: EngineRegisterCommand) -> list[str]:
        config = EngineConfig(
            engine_id=command.engine_id,
            queue_name=command.queue_name or f"{command.engine_id}_queue",
            max_concurrency=command.max_concurrency,
            job_ttl_minutes=command.job_ttl_minutes,
            enabled=command.enabled,
            feature_flag=command.feature_flag,
        )
        settings = _settings(command.db_path)
        with open_runtime(settings) as runtime:
            runtime.registry.register(config)
        return [
            f"Engine registered: {config.engine_id} queue={config.queue_name} "
            f"enabled={'yes' if config.enabled else 'no'}",
        ]


def parse_related_ids(values: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated `name=value` options into a related-id map."""

    related: dict[str, str] = {}
    for value in values:
        if "=" not in value:
            raise ValueError(f"Invalid related id {value!r}. Expected format '<name>=<value>'.")
        name, raw = value.split("=", 1)
        name = name.strip()
        if name not in RELATED_ID_NAMES:
            raise ValueError(
                f"Unsupported related id {name!r}. Expected one of: {', '.join(RELATED_ID_NAMES)}",
            )
        if raw.strip():
            related[name] = raw.strip()
    return related


def parse_payload(raw: str | None) -> dict[str, Any]:
    if raw is None or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Job payload is not valid JSON: {error}") from error
    if not isinstance(parsed, dict):
        raise ValueError("Job payload must be a JSON object.")
    return parsed


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value)
    except ValueError as error:
        raise ValueError(f"Unsupported job status: {value!r}") from error


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings

"""CLI entrypoint for dealflow."""

import logging
import os
from pathlib import Path

import rich_click as click

from dealflow import __version__
from dealflow.gateway.controllers import (
    GatewayCliController,
    LlmCostCommand,
    LlmEventsCommand,
    LlmInvokeCommand,
)
from dealflow.orchestrator.controllers import (
    CleanupCommand,
    CliResult,
    DeadLetterListCommand,
    DeadLetterReplayCommand,
    EngineListCommand,
    EngineRegisterCommand,
    JobEnqueueCommand,
    JobInspectCommand,
    JobListCommand,
    JobProcessCommand,
    QueueCliController,
    QueueStatsCommand,
)
from dealflow.orchestrator.models import RELATED_ID_NAMES, JobPriority, JobSource, JobStatus

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()
GATEWAY_CONTROLLER = GatewayCliController()


@click.group()
@click.version_option(version=__version__, prog_name="dealflow")
def dealflow() -> None:
    """Deal-flow job orchestration and LLM gateway CLI."""

    level = os.getenv("DEALFLOW_LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=level if isinstance(logging.getLevelName(level), int) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dealflow.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--engine", "engine_id", required=True, help="Engine id, for example deal_analysis.")
@click.option("--tenant", "tenant_id", required=True, help="Tenant (organization) id.")
@click.option("--reason", "trigger_reason", required=True, help="Why the job was requested.")
@click.option(
    "--related",
    "related_ids",
    multiple=True,
    help=f"Related id as `name=value`. Names: {', '.join(RELATED_ID_NAMES)}. Can be repeated.",
)
@click.option("--payload", "payload_json", default=None, help="Extra job payload as JSON object.")
@click.option(
    "--source",
    type=click.Choice([source.value for source in JobSource]),
    default=JobSource.USER.value,
    show_default=True,
)
@click.option(
    "--delay-minutes",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Schedule the job this many minutes from now.",
)
@click.option(
    "--priority",
    type=click.Choice([priority.value for priority in JobPriority]),
    default=JobPriority.NORMAL.value,
    show_default=True,
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Override DEALFLOW_QUEUE_MAX_RETRIES for this job.",
)
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    engine_id: str,
    tenant_id: str,
    trigger_reason: str,
    related_ids: tuple[str, ...],
    payload_json: str | None,
    source: str,
    delay_minutes: int,
    priority: str,
    max_retries: int | None,
) -> None:
    """Submit a job for an engine; duplicates of a queued job are absorbed."""

    _emit_result(
        _call(
            QUEUE_CONTROLLER.enqueue,
            JobEnqueueCommand(
                db_path=db_path,
                engine_id=engine_id,
                tenant_id=tenant_id,
                trigger_reason=trigger_reason,
                related_ids=related_ids,
                payload_json=payload_json,
                source=source,
                delay_minutes=delay_minutes,
                priority=priority,
                max_retries=max_retries,
            ),
        ),
        failure="Job was not queued.",
    )


@jobs.command("process")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--queue", "queue_name", required=True, help="Queue name, for example deal_queue.")
@click.option(
    "--worker-id",
    default=None,
    help="Worker identity for the queue lock. Defaults to DEALFLOW_WORKER_ID.",
)
def jobs_process(db_path: Path | None, queue_name: str, worker_id: str | None) -> None:
    """Run one processing pass over a queue."""

    _emit_result(
        _call(
            QUEUE_CONTROLLER.process,
            JobProcessCommand(db_path=db_path, queue_name=queue_name, worker_id=worker_id),
        ),
        failure="Queue pass failed.",
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Only show jobs in this status.",
)
@click.option("--queue", "queue_name", default=None, help="Only show jobs of this queue.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
)
def jobs_list(
    db_path: Path | None,
    status: str | None,
    queue_name: str | None,
    limit: int,
) -> None:
    """List recent jobs."""

    _emit_lines(
        _call(
            QUEUE_CONTROLLER.list_jobs,
            JobListCommand(db_path=db_path, status=status, queue_name=queue_name, limit=limit),
        ),
    )


@jobs.command("inspect")
@click.argument("job_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
def jobs_inspect(job_id: str, db_path: Path | None, output_format: str) -> None:
    """Show one job."""

    _emit_result(
        _call(
            QUEUE_CONTROLLER.inspect,
            JobInspectCommand(db_path=db_path, job_id=job_id, output_format=output_format),
        ),
        failure="Job not found.",
    )


@jobs.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
def jobs_stats(db_path: Path | None, output_format: str) -> None:
    """Show job counts by status and engine."""

    _emit_lines(
        _call(
            QUEUE_CONTROLLER.stats,
            QueueStatsCommand(db_path=db_path, output_format=output_format),
        ),
    )


@jobs.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_cleanup(db_path: Path | None) -> None:
    """Expire overdue jobs, drop stale locks, purge old completions, recover stuck jobs."""

    _emit_lines(_call(QUEUE_CONTROLLER.cleanup, CleanupCommand(db_path=db_path)))


@dealflow.group()
def dlq() -> None:
    """Dead letter queue commands."""


@dlq.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--queue", "queue_name", default=None, help="Only show entries of this queue.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
)
def dlq_list(db_path: Path | None, queue_name: str | None, limit: int) -> None:
    """List dead-lettered jobs."""

    _emit_lines(
        _call(
            QUEUE_CONTROLLER.list_dead_letters,
            DeadLetterListCommand(db_path=db_path, queue_name=queue_name, limit=limit),
        ),
    )


@dlq.command("replay")
@click.argument("dlq_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def dlq_replay(dlq_id: str, db_path: Path | None) -> None:
    """Resubmit a dead-lettered job as a fresh job."""

    _emit_result(
        _call(
            QUEUE_CONTROLLER.replay_dead_letter,
            DeadLetterReplayCommand(db_path=db_path, dlq_id=dlq_id),
        ),
        failure="Dead letter was not replayed.",
    )


@dealflow.group()
def engines() -> None:
    """Engine registry commands."""


@engines.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def engines_list(db_path: Path | None) -> None:
    """List registered engines."""

    _emit_lines(_call(QUEUE_CONTROLLER.list_engines, EngineListCommand(db_path=db_path)))


@engines.command("register")
@click.argument("engine_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--queue",
    "queue_name",
    default=None,
    help="Queue name. Defaults to `<engine>_queue`.",
)
@click.option(
    "--max-concurrency",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Jobs claimed per processing pass.",
)
@click.option(
    "--ttl-minutes",
    "job_ttl_minutes",
    type=click.IntRange(min=1),
    default=60,
    show_default=True,
    help="Minutes a queued job stays valid.",
)
@click.option("--enabled/--disabled", default=True, show_default=True)
@click.option("--feature-flag", default=None, help="Optional feature flag name.")
def engines_register(  # noqa: PLR0913
    engine_id: str,
    db_path: Path | None,
    queue_name: str | None,
    max_concurrency: int,
    job_ttl_minutes: int,
    enabled: bool,
    feature_flag: str | None,
) -> None:
    """Create or update an engine configuration."""

    _emit_lines(
        _call(
            QUEUE_CONTROLLER.register_engine,
            EngineRegisterCommand(
                db_path=db_path,
                engine_id=engine_id,
                queue_name=queue_name,
                max_concurrency=max_concurrency,
                job_ttl_minutes=job_ttl_minutes,
                enabled=enabled,
                feature_flag=feature_flag,
            ),
        ),
    )


@dealflow.group()
def llm() -> None:
    """LLM gateway commands."""


@llm.command("invoke")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--model", "model_id", required=True, help="Model id, for example gpt-4o-mini.")
@click.option("--model-version", default="latest", show_default=True)
@click.option("--temperature", type=click.FloatRange(min=0.0, max=2.0), default=0.0)
@click.option("--top-p", type=click.FloatRange(min=0.0, max=1.0), default=1.0)
@click.option("--prompt", required=True, help="System prompt.")
@click.option("--content", required=True, help="User content.")
@click.option("--deal-id", default=None, help="Deal the spend is charged to.")
@click.option("--fund-id", default=None)
@click.option("--agent", "agent_name", default=None, help="Calling agent name.")
@click.option("--execution-id", default=None)
@click.option(
    "--provider",
    type=click.Choice(["openai", "perplexity"]),
    default=None,
    help="Defaults to DEALFLOW_LLM_PROVIDER.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
def llm_invoke(  # noqa: PLR0913
    db_path: Path | None,
    model_id: str,
    model_version: str,
    temperature: float,
    top_p: float,
    prompt: str,
    content: str,
    deal_id: str | None,
    fund_id: str | None,
    agent_name: str | None,
    execution_id: str | None,
    provider: str | None,
    output_format: str,
) -> None:
    """Call a model through the cache, cost caps, rate limiter and retries."""

    _emit_result(
        _call(
            GATEWAY_CONTROLLER.invoke,
            LlmInvokeCommand(
                db_path=db_path,
                model_id=model_id,
                model_version=model_version,
                temperature=temperature,
                top_p=top_p,
                prompt=prompt,
                content=content,
                deal_id=deal_id,
                fund_id=fund_id,
                agent_name=agent_name,
                execution_id=execution_id,
                provider=provider,
                output_format=output_format,
            ),
        ),
        failure="LLM call did not succeed.",
    )


@llm.command("events")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--type", "event_type", default=None, help="Filter, e.g. rate_limit_hit.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
)
def llm_events(db_path: Path | None, event_type: str | None, limit: int) -> None:
    """Show recent rate-limit and cost-cap events."""

    _emit_lines(
        _call(
            GATEWAY_CONTROLLER.events,
            LlmEventsCommand(db_path=db_path, event_type=event_type, limit=limit),
        ),
    )


@llm.command("cost")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--deal-id", required=True)
def llm_cost(db_path: Path | None, deal_id: str) -> None:
    """Show model spend for one deal against its budget."""

    _emit_lines(
        _call(GATEWAY_CONTROLLER.cost, LlmCostCommand(db_path=db_path, deal_id=deal_id)),
    )


@dealflow.command("serve")
@click.option("--host", default=None, help="Bind address. Defaults to DEALFLOW_API_HOST.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=None)
def serve(host: str | None, port: int | None) -> None:
    """Run the HTTP API with uvicorn."""

    import uvicorn

    from dealflow.api.app import create_app
    from dealflow.config import Settings

    settings = Settings.from_env()
    try:
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    uvicorn.run(
        create_app(),
        host=host or settings.api.host,
        port=port or settings.api.port,
        log_level=settings.log_level.lower(),
    )


def _call(handler, command):
    try:
        return handler(command)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_result(result: CliResult, *, failure: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    dealflow()

"""FastAPI application exposing job submission, queue passes and the LLM gateway."""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from dealflow import __version__
from dealflow.api.errors import ApiError, rejection_error
from dealflow.api.schemas import (
    EnqueueJobRequest,
    LlmInvokeBody,
    error_envelope,
    success_envelope,
)
from dealflow.config import Settings
from dealflow.gateway.models import LlmInvokeRequest
from dealflow.orchestrator.models import JobPriority, JobSource, QueueJobOptions
from dealflow.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


def _trace_id_from_request(request: Request) -> str:
    trace_id = request.headers.get("x-trace-id")
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def _error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: list[dict[str, Any]] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=_trace_id_from_request(request),
            details=details,
        ),
    )


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Build the API around ``runtime``; without one, settings come from the environment.

    A runtime passed in stays owned by the caller and is not closed on shutdown.
    """

    owned = runtime is None
    if runtime is None:
        settings = Settings.from_env()
        settings.validate()
        runtime = build_runtime(settings)
    active: Runtime = runtime

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            if owned:
                active.close()

    app = FastAPI(title="Dealflow Orchestrator API", version=__version__, lifespan=lifespan)
    app.state.runtime = active

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return _error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        details = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": str(err.get("msg", "")),
                "type": str(err.get("type", "")),
            }
            for err in exc.errors()
        ]
        return _error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=422,
            details=details,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return _error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, _trace_id_from_request(request))

    @app.post("/jobs")
    def enqueue_job(payload: EnqueueJobRequest, request: Request):
        result = active.manager.queue_job(
            engine_id=payload.engine_id,
            tenant_id=payload.tenant_id,
            trigger_reason=payload.trigger_reason,
            related_ids=payload.related_ids.model_dump(exclude_none=True),
            payload=payload.payload,
            options=QueueJobOptions(
                source=JobSource(payload.options.source),
                delay_minutes=payload.options.delay_minutes,
                priority=JobPriority(payload.options.priority),
                max_retries=payload.options.max_retries,
            ),
        )
        if not result.success:
            raise rejection_error(result)
        return JSONResponse(
            status_code=201,
            content=success_envelope(
                {"job_id": result.job_id, "duplicate": result.duplicate},
                _trace_id_from_request(request),
            ),
        )

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str, request: Request):
        job = active.manager.get_job(job_id)
        if job is None:
            raise ApiError.not_found("JOB_NOT_FOUND", "job not found")
        return success_envelope(job.to_dict(), _trace_id_from_request(request))

    @app.get("/queues/stats")
    def queue_stats(request: Request):
        return success_envelope(
            active.manager.queue_stats().to_dict(),
            _trace_id_from_request(request),
        )

    @app.post("/queues/{queue_name}/process")
    def process_queue(
        queue_name: str,
        request: Request,
        worker_id: str | None = Query(default=None),
        header_worker_id: str | None = Header(default=None, alias="X-Worker-Id"),
    ):
        worker = worker_id or header_worker_id or active.settings.queue.default_worker_id
        result = active.manager.process_queue(queue_name, worker)
        if not result.success:
            raise ApiError.not_found("QUEUE_NOT_FOUND", result.error or "queue not found")
        data = {
            "queue_name": result.queue_name,
            "worker_id": worker,
            "processed": result.processed,
            "failed": result.failed,
            "skipped": result.skipped,
            "lock_acquired": result.lock_acquired,
        }
        return success_envelope(data, _trace_id_from_request(request))

    @app.post("/maintenance/cleanup")
    def cleanup(request: Request):
        summary = active.manager.cleanup()
        return success_envelope(summary.to_dict(), _trace_id_from_request(request))

    @app.get("/dead-letters")
    def list_dead_letters(
        request: Request,
        queue_name: str | None = Query(default=None),
        limit: int = Query(default=50, ge=1, le=500),
    ):
        entries = active.manager.list_dead_letters(queue_name=queue_name, limit=limit)
        return success_envelope(
            {"items": [entry.to_dict() for entry in entries], "total": len(entries)},
            _trace_id_from_request(request),
        )

    @app.post("/dead-letters/{dlq_id}/replay")
    def replay_dead_letter(dlq_id: str, request: Request):
        result = active.manager.replay_dead_letter(dlq_id)
        if not result.success:
            raise rejection_error(result)
        return JSONResponse(
            status_code=201,
            content=success_envelope(
                {"dlq_id": dlq_id, "job_id": result.job_id, "duplicate": result.duplicate},
                _trace_id_from_request(request),
            ),
        )

    @app.get("/engines")
    def list_engines(request: Request):
        engines = [
            {
                "engine_id": engine.engine_id,
                "queue_name": engine.queue_name,
                "max_concurrency": engine.max_concurrency,
                "job_ttl_minutes": engine.job_ttl_minutes,
                "enabled": engine.enabled,
                "feature_flag": engine.feature_flag,
            }
            for engine in active.registry.list_engines()
        ]
        return success_envelope({"items": engines}, _trace_id_from_request(request))

    @app.post("/llm/invoke")
    def invoke_llm(body: LlmInvokeBody, request: Request):
        result = active.control_plane.invoke(LlmInvokeRequest(**body.model_dump()))
        return success_envelope(result.to_dict(), _trace_id_from_request(request))

    logger.debug("API ready on %s", active.settings.db_path)
    return app

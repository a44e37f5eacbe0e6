"""Downstream engine invocation for claimed jobs."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from dealflow.errors import EngineInvocationError
from dealflow.orchestrator.models import JobView

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0


class EngineInvoker(Protocol):
    """Opaque engine call: returns on success, raises on failure."""

    def invoke(self, job: JobView) -> None: ...


class HttpFunctionInvoker:
    """Invoke a serverless function with a body built from the job."""

    def __init__(
        self,
        *,
        client: httpx.Client,
        function_name: str,
        body_fields: tuple[str, ...],
    ) -> None:
        self._client = client
        self.function_name = function_name
        self._body_fields = body_fields

    def build_body(self, job: JobView) -> dict[str, Any]:
        available: dict[str, Any] = {
            **job.related_ids,
            "trigger_reason": job.trigger_reason,
            "job_id": job.job_id,
            "tenant_id": job.tenant_id,
        }
        body = {name: available.get(name) for name in self._body_fields}
        if job.payload:
            body["job_payload"] = job.payload
        return body

    def invoke(self, job: JobView) -> None:
        try:
            response = self._client.post(f"/{self.function_name}", json=self.build_body(job))
        except httpx.HTTPError as exc:
            raise EngineInvocationError(
                job.engine,
                f"{self.function_name} request failed: {exc}",
            ) from exc
        if not response.is_success:
            raise EngineInvocationError(
                job.engine,
                f"{self.function_name} returned HTTP {response.status_code}: "
                f"{response.text[:500]}",
                status_code=response.status_code,
            )
        logger.info("Engine %s accepted job %s", self.function_name, job.job_id)


class AcknowledgeInvoker:
    """Engine without a remote worker; the job is logged and completed."""

    def invoke(self, job: JobView) -> None:
        logger.info(
            "Acknowledged %s job %s for tenant %s (reason=%s)",
            job.engine,
            job.job_id,
            job.tenant_id,
            job.trigger_reason,
        )


class EngineDispatcher:
    """Route a job to the invoker registered for its engine."""

    def __init__(self, invokers: dict[str, EngineInvoker] | None = None) -> None:
        self._invokers: dict[str, EngineInvoker] = dict(invokers or {})

    def register(self, engine_id: str, invoker: EngineInvoker) -> None:
        self._invokers[engine_id] = invoker

    def engines(self) -> tuple[str, ...]:
        return tuple(sorted(self._invokers))

    def dispatch(self, job: JobView) -> None:
        invoker = self._invokers.get(job.engine)
        if invoker is None:
            raise EngineInvocationError(job.engine, f"Unknown engine: {job.engine}")
        invoker.invoke(job)


def build_functions_client(
    *,
    base_url: str,
    api_key: str | None,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> httpx.Client:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return httpx.Client(
        base_url=base_url.rstrip("/"),
        headers=headers,
        timeout=httpx.Timeout(timeout_seconds, connect=10.0),
    )


def build_default_dispatcher(client: httpx.Client) -> EngineDispatcher:
    """Dispatch table for the built-in engines."""

    return EngineDispatcher(
        {
            "deal_analysis": HttpFunctionInvoker(
                client=client,
                function_name="enhanced-deal-analysis",
                body_fields=("deal_id", "trigger_reason", "job_id"),
            ),
            "document_analysis": HttpFunctionInvoker(
                client=client,
                function_name="document-processor",
                body_fields=("document_id", "deal_id", "job_id"),
            ),
            "strategy_change": AcknowledgeInvoker(),
            "note_analysis": AcknowledgeInvoker(),
        },
    )

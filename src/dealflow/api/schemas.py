"""Request bodies and response envelopes for the HTTP API."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class RelatedIds(BaseModel):
    model_config = ConfigDict(extra="forbid")

    deal_id: str | None = None
    strategy_id: str | None = None
    document_id: str | None = None
    note_id: str | None = None


class JobOptions(BaseModel):
    source: Literal["user", "scheduler", "event"] = "user"
    delay_minutes: int = Field(default=0, ge=0)
    priority: Literal["high", "normal", "low"] = "normal"
    max_retries: int | None = Field(default=None, ge=0)


class EnqueueJobRequest(BaseModel):
    engine_id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    trigger_reason: str = Field(min_length=1)
    related_ids: RelatedIds = Field(default_factory=RelatedIds)
    payload: dict[str, Any] = Field(default_factory=dict)
    options: JobOptions = Field(default_factory=JobOptions)


class LlmInvokeBody(BaseModel):
    model_id: str = Field(min_length=1)
    model_version: str = "latest"
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    top_p: float = Field(default=1.0, ge=0.0, le=1.0)
    prompt: str
    content: str
    deal_id: str | None = None
    fund_id: str | None = None
    agent_name: str | None = None
    execution_id: str | None = None
    provider: Literal["openai", "perplexity"] | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }

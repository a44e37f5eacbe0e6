"""Request and result models for the LLM control plane."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class FailureClass(str, Enum):
    """Normalized provider failure classes used by the retry loop."""

    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    NON_RETRYABLE = "non_retryable"

    @property
    def retryable(self) -> bool:
        return self in {FailureClass.RATE_LIMITED, FailureClass.TRANSIENT}


class CostLimitType(str, Enum):
    """Which cost cap tripped degradation mode."""

    PER_DEAL = "per_deal"
    PER_MINUTE = "per_minute"


@dataclass(slots=True)
class LlmInvokeRequest:
    """One model call routed through the control plane."""

    model_id: str
    prompt: str
    content: str
    model_version: str = "latest"
    temperature: float = 0.0
    top_p: float = 1.0
    deal_id: str | None = None
    fund_id: str | None = None
    agent_name: str | None = None
    execution_id: str | None = None
    provider: str | None = None


@dataclass(slots=True)
class CostInfo:
    """Spend against the per-deal budget."""

    current_cost: float
    remaining_budget: float

    def to_dict(self) -> dict[str, float]:
        return {
            "current_cost": round(self.current_cost, 6),
            "remaining_budget": round(self.remaining_budget, 6),
        }


@dataclass(slots=True)
class LlmInvokeResult:
    """Control plane response, success or soft failure."""

    success: bool
    cost_info: CostInfo
    response: dict[str, Any] | None = None
    cache_hit: bool = False
    retry_count: int = 0
    degradation_mode: bool = False
    degradation_banner: str | None = None
    limit_type: CostLimitType | None = None
    error: str | None = None
    failure_class: FailureClass | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "response": self.response,
            "cache_hit": self.cache_hit,
            "retry_count": self.retry_count,
            "degradation_mode": self.degradation_mode,
            "cost_info": self.cost_info.to_dict(),
        }
        if self.degradation_banner is not None:
            payload["degradation_banner"] = self.degradation_banner
        if self.limit_type is not None:
            payload["limit_type"] = self.limit_type.value
        if self.error is not None:
            payload["error"] = self.error
        if self.failure_class is not None:
            payload["failure_class"] = self.failure_class.value
        return payload


@dataclass(slots=True)
class CostRecordCreate:
    """Ledger row for one billed model call."""

    provider: str
    model_id: str
    prompt_tokens: int
    completion_tokens: int
    total_cost: float
    deal_id: str | None = None
    fund_id: str | None = None
    execution_id: str | None = None
    agent_name: str | None = None


@dataclass(slots=True)
class RateLimitDecision:
    """Outcome of consuming one request from a bucket."""

    bucket: str
    limited: bool
    requests_count: int


@dataclass(slots=True)
class OpsEventView:
    """Operational event for dashboards."""

    event_id: int
    event_type: str
    provider: str | None
    model_id: str | None
    bucket: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "provider": self.provider,
            "model_id": self.model_id,
            "bucket": self.bucket,
            "created_at": self.created_at.isoformat(),
            "details": dict(self.details),
        }

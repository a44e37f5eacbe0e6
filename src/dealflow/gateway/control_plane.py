"""LLM control plane: cache, cost caps, rate limits and bounded retries."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import httpx

from dealflow.config import GatewaySettings
from dealflow.errors import ProviderError
from dealflow.gateway.deals import DealStatusWriter
from dealflow.gateway.failure_classifier import (
    ProviderFailureClassification,
    classify_provider_failure,
)
from dealflow.gateway.models import (
    CostInfo,
    CostLimitType,
    CostRecordCreate,
    LlmInvokeRequest,
    LlmInvokeResult,
)
from dealflow.gateway.pricing import estimate_cost_usd
from dealflow.gateway.provider import ProviderRouter
from dealflow.gateway.repository import GatewayRepository
from dealflow.gateway.usage import extract_usage
from dealflow.orchestrator.keys import cache_key
from dealflow.storage.common import utc_now

logger = logging.getLogger(__name__)

BACKOFF_BASE_MS = 1_000
BACKOFF_JITTER_MS = 1_000


def backoff_delay_ms(attempt: int, jitter: float) -> float:
    """Exponential delay for a 0-based attempt with jitter in ``[0, 1)`` scaled to 1s."""

    return (2**attempt) * BACKOFF_BASE_MS + jitter * BACKOFF_JITTER_MS


class LlmControlPlane:
    """Single gate for outbound model calls.

    Order of checks per invocation: response cache, cost caps (deal scoped),
    then up to ``max_attempts`` attempts, each consuming the rate-limit bucket
    before calling the provider. Cache hits and degraded responses never reach
    the rate limiter or the ledger.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: GatewayRepository,
        providers: ProviderRouter,
        deal_status_writer: DealStatusWriter,
        settings: GatewaySettings | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.providers = providers
        self.deal_status_writer = deal_status_writer
        self.settings = settings or GatewaySettings()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    def invoke(self, request: LlmInvokeRequest) -> LlmInvokeResult:
        provider_name = (request.provider or self.settings.default_provider).strip().lower()
        key = cache_key(
            model_id=request.model_id,
            model_version=request.model_version,
            temperature=request.temperature,
            top_p=request.top_p,
            prompt=request.prompt,
            content=request.content,
        )
        logger.info(
            "LLM call %s:%s for agent %s (cache key %s...)",
            provider_name,
            request.model_id,
            request.agent_name or "-",
            key.key[:16],
        )

        now = self._clock()
        cached = self.repository.get_cached_response(
            cache_key=key.key,
            fresh_after=now - timedelta(hours=self.settings.cache_ttl_hours),
        )
        if cached is not None:
            logger.info("Cache hit for %s:%s", provider_name, request.model_id)
            return LlmInvokeResult(
                success=True,
                response=cached,
                cache_hit=True,
                cost_info=CostInfo(
                    current_cost=0.0,
                    remaining_budget=self.settings.per_deal_cost_cap,
                ),
            )

        prior_deal_cost = 0.0
        if request.deal_id:
            prior_deal_cost = self.repository.deal_cost(request.deal_id)
            degraded = self._check_cost_caps(
                request=request,
                deal_id=request.deal_id,
                provider=provider_name,
                deal_cost=prior_deal_cost,
                now=now,
            )
            if degraded is not None:
                return degraded

        response, retry_count, failure = self._call_with_retries(
            request=request,
            provider_name=provider_name,
        )
        if response is None:
            error = failure[1] if failure is not None else "LLM call failed after max retries"
            logger.error(
                "LLM call %s:%s failed after %d retries: %s",
                provider_name,
                request.model_id,
                retry_count,
                error,
            )
            return LlmInvokeResult(
                success=False,
                retry_count=retry_count,
                error=error,
                failure_class=failure[0].failure_class if failure is not None else None,
                cost_info=self._cost_info(prior_deal_cost),
            )

        finished_at = self._clock()
        self.repository.store_cached_response(
            key=key,
            model_id=request.model_id,
            model_version=request.model_version,
            response=response,
            now=finished_at,
        )
        usage = extract_usage(response=response, prompt=request.prompt, content=request.content)
        cost = estimate_cost_usd(
            provider=provider_name,
            model=request.model_id,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )
        self.repository.record_cost(
            CostRecordCreate(
                provider=provider_name,
                model_id=request.model_id,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_cost=cost,
                deal_id=request.deal_id,
                fund_id=request.fund_id,
                execution_id=request.execution_id,
                agent_name=request.agent_name,
            ),
            now=finished_at,
        )
        logger.info(
            "LLM call %s:%s succeeded after %d retries, cost $%.6f (%s usage)",
            provider_name,
            request.model_id,
            retry_count,
            cost,
            usage.usage_status,
        )
        return LlmInvokeResult(
            success=True,
            response=response,
            retry_count=retry_count,
            cost_info=self._cost_info(prior_deal_cost + cost),
        )

    def _check_cost_caps(
        self,
        *,
        request: LlmInvokeRequest,
        deal_id: str,
        provider: str,
        deal_cost: float,
        now: datetime,
    ) -> LlmInvokeResult | None:
        per_deal_cap = self.settings.per_deal_cost_cap
        if deal_cost >= per_deal_cap:
            logger.warning(
                "Deal %s spent $%.2f of $%s; entering degradation mode",
                deal_id,
                deal_cost,
                _format_cap(per_deal_cap),
            )
            try:
                self.deal_status_writer.set_deal_draft_status(deal_id)
            except httpx.HTTPError:
                logger.exception("Could not switch deal %s to draft status", deal_id)
            self.repository.record_ops_event(
                event_type="cost_cap_exceeded",
                now=now,
                provider=provider,
                model_id=request.model_id,
                details={
                    "deal_id": deal_id,
                    "limit_type": CostLimitType.PER_DEAL.value,
                    "current_cost": round(deal_cost, 6),
                    "cap": per_deal_cap,
                },
            )
            return LlmInvokeResult(
                success=False,
                degradation_mode=True,
                degradation_banner=(
                    "Cost limit exceeded. Analysis limited to essential functions only. "
                    f"Budget: ${deal_cost:.2f}/${_format_cap(per_deal_cap)}"
                ),
                limit_type=CostLimitType.PER_DEAL,
                cost_info=self._cost_info(deal_cost),
            )

        per_minute_cap = self.settings.per_minute_cost_cap
        minute_cost = self.repository.cost_since(now - timedelta(minutes=1))
        if minute_cost >= per_minute_cap:
            logger.warning(
                "Spend in the last minute reached $%.2f of $%s; deferring deal %s",
                minute_cost,
                _format_cap(per_minute_cap),
                deal_id,
            )
            self.repository.record_ops_event(
                event_type="cost_cap_exceeded",
                now=now,
                provider=provider,
                model_id=request.model_id,
                details={
                    "deal_id": deal_id,
                    "limit_type": CostLimitType.PER_MINUTE.value,
                    "current_cost": round(minute_cost, 6),
                    "cap": per_minute_cap,
                },
            )
            return LlmInvokeResult(
                success=False,
                degradation_mode=True,
                degradation_banner=(
                    "Cost limit exceeded. Analysis limited to essential functions only. "
                    f"Per-minute spend: ${minute_cost:.2f}/${_format_cap(per_minute_cap)}"
                ),
                limit_type=CostLimitType.PER_MINUTE,
                cost_info=self._cost_info(deal_cost),
            )
        return None

    def _call_with_retries(
        self,
        *,
        request: LlmInvokeRequest,
        provider_name: str,
    ) -> tuple[dict[str, Any] | None, int, tuple[ProviderFailureClassification, str] | None]:
        """Attempt the call; return (response, retry_count, last failure)."""

        bucket = f"{provider_name}:{request.model_id}"
        max_attempts = self.settings.max_attempts
        retry_count = 0
        last_failure: tuple[ProviderFailureClassification, str] | None = None

        for attempt in range(max_attempts):
            now = self._clock()
            decision = self.repository.consume_rate_limit(
                bucket_id=bucket,
                limit=self.settings.rate_limit_requests,
                window_seconds=self.settings.rate_limit_window_seconds,
                now=now,
            )
            if decision.limited:
                logger.warning(
                    "Rate limited on bucket %s (attempt %d/%d)",
                    bucket,
                    attempt + 1,
                    max_attempts,
                )
                self.repository.record_ops_event(
                    event_type="rate_limit_hit",
                    now=now,
                    provider=provider_name,
                    model_id=request.model_id,
                    bucket=bucket,
                    details={"requests_count": decision.requests_count, "attempt": attempt + 1},
                )
                last_failure = None
                retry_count += 1
                self._backoff(attempt, max_attempts)
                continue

            try:
                provider = self.providers.get(provider_name)
                return provider.complete(request), retry_count, None
            except (ProviderError, httpx.HTTPError) as exc:
                classification = classify_provider_failure(exc, provider=provider_name)
                last_failure = (classification, str(exc))
                logger.warning(
                    "LLM call %s failed on attempt %d/%d (%s): %s",
                    bucket,
                    attempt + 1,
                    max_attempts,
                    classification.failure_class.value,
                    exc,
                )
                if not classification.retryable:
                    break
                retry_count += 1
                self._backoff(attempt, max_attempts)

        return None, retry_count, last_failure

    def _backoff(self, attempt: int, max_attempts: int) -> None:
        if attempt + 1 >= max_attempts:
            return
        delay_ms = backoff_delay_ms(attempt, self._rng.random())
        logger.info("Backing off %.0f ms before attempt %d", delay_ms, attempt + 2)
        self._sleep(delay_ms / 1000.0)

    def _cost_info(self, current_cost: float) -> CostInfo:
        cap = self.settings.per_deal_cost_cap
        return CostInfo(current_cost=current_cost, remaining_budget=max(0.0, cap - current_cost))


def _format_cap(value: float) -> str:
    return f"{value:g}"

"""Deterministic provider failure classification for the gateway retry loop."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from dealflow.errors import ProviderError
from dealflow.gateway.models import FailureClass

PROVIDER_FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "insufficient_quota",
    "exceeded your current quota",
    "resource_exhausted",
    "billing",
    "payment required",
    "credits",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "429",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "model_not_found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "does not exist",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "overloaded",
    "timeout",
    "timed out",
    "connection reset",
    "bad gateway",
    "service unavailable",
)


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class.retryable

    def to_event_details(self, *, provider: str, model: str) -> dict[str, object]:
        return {
            "classifier_version": PROVIDER_FAILURE_CLASSIFIER_VERSION,
            "provider": provider,
            "model": model,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_failure(  # noqa: PLR0911
    error: Exception,
    *,
    provider: str,
) -> ProviderFailureClassification:
    """Classify a failed provider call into a deterministic retry class."""

    status_code = _status_code(error)
    haystack = str(error).lower()

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return _classification(
            provider,
            FailureClass.BILLING_OR_QUOTA,
            "billing_or_quota",
            pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if status_code == 429 or pattern is not None:
        return _classification(
            provider,
            FailureClass.RATE_LIMITED,
            "status_429" if status_code == 429 else "rate_limit_text",
            pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if status_code in {401, 403} or pattern is not None:
        return _classification(provider, FailureClass.ACCESS_OR_AUTH, "access_or_auth", pattern)

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if status_code == 404 or pattern is not None:
        return _classification(
            provider,
            FailureClass.MODEL_NOT_AVAILABLE,
            "model_not_available",
            pattern,
        )

    if isinstance(error, httpx.TransportError):
        return _classification(provider, FailureClass.TRANSIENT, "transport_error", None)

    if status_code is not None and status_code >= 500:
        return _classification(provider, FailureClass.TRANSIENT, "server_error", None)

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return _classification(provider, FailureClass.TRANSIENT, "generic_transient", pattern)

    return _classification(provider, FailureClass.NON_RETRYABLE, "fallback_non_retryable", None)


def _classification(
    provider: str,
    failure_class: FailureClass,
    matched_rule: str,
    matched_pattern: str | None,
) -> ProviderFailureClassification:
    return ProviderFailureClassification(
        failure_class=failure_class,
        reason_code=f"{provider}_{failure_class.value}",
        matched_rule=matched_rule,
        matched_pattern=matched_pattern,
    )


def _status_code(error: Exception) -> int | None:
    if isinstance(error, ProviderError):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None

from __future__ import annotations

import allure
import httpx

from dealflow.errors import ProviderError
from dealflow.gateway.failure_classifier import (
    PROVIDER_FAILURE_CLASSIFIER_VERSION,
    classify_provider_failure,
)
from dealflow.gateway.models import FailureClass

pytestmark = [
    allure.epic("LLM Gateway"),
    allure.feature("Provider Failures"),
]


def test_classifier_version_is_stable() -> None:
    assert PROVIDER_FAILURE_CLASSIFIER_VERSION == 1


def test_classifier_prefers_billing_over_rate_limit_status() -> None:
    classified = classify_provider_failure(
        ProviderError(
            "openai returned HTTP 429: You exceeded your current quota",
            status_code=429,
        ),
        provider="openai",
    )
    assert classified.failure_class == FailureClass.BILLING_OR_QUOTA
    assert classified.matched_pattern == "exceeded your current quota"
    assert classified.retryable is False


def test_classifier_maps_429_status_to_rate_limited() -> None:
    classified = classify_provider_failure(
        ProviderError("openai returned HTTP 429: slow down", status_code=429),
        provider="openai",
    )
    assert classified.failure_class == FailureClass.RATE_LIMITED
    assert classified.matched_rule == "status_429"
    assert classified.retryable is True


def test_classifier_maps_rate_limit_text_without_status() -> None:
    classified = classify_provider_failure(
        ProviderError("Rate limit reached for requests"),
        provider="perplexity",
    )
    assert classified.failure_class == FailureClass.RATE_LIMITED
    assert classified.matched_rule == "rate_limit_text"
    assert classified.reason_code == "perplexity_rate_limited"


def test_classifier_maps_auth_failures() -> None:
    classified = classify_provider_failure(
        ProviderError("openai returned HTTP 401: Incorrect API key provided", status_code=401),
        provider="openai",
    )
    assert classified.failure_class == FailureClass.ACCESS_OR_AUTH
    assert classified.retryable is False


def test_classifier_maps_model_unavailable() -> None:
    classified = classify_provider_failure(
        ProviderError(
            "openai returned HTTP 404: The model `gpt-9` does not exist",
            status_code=404,
        ),
        provider="openai",
    )
    assert classified.failure_class == FailureClass.MODEL_NOT_AVAILABLE
    assert classified.reason_code == "openai_model_not_available"


def test_classifier_treats_transport_and_server_errors_as_transient() -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    transport = classify_provider_failure(
        httpx.ConnectError("connection refused", request=request),
        provider="openai",
    )
    server = classify_provider_failure(
        ProviderError("openai returned HTTP 502", status_code=502),
        provider="openai",
    )

    assert transport.failure_class == FailureClass.TRANSIENT
    assert transport.matched_rule == "transport_error"
    assert server.failure_class == FailureClass.TRANSIENT
    assert server.matched_rule == "server_error"


def test_classifier_reads_status_from_http_status_error() -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(503, request=request)
    error = httpx.HTTPStatusError("upstream", request=request, response=response)

    classified = classify_provider_failure(error, provider="openai")

    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.matched_rule == "server_error"


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = classify_provider_failure(
        ProviderError("openai returned HTTP 400: messages must not be empty", status_code=400),
        provider="openai",
    )
    assert classified.failure_class == FailureClass.NON_RETRYABLE
    assert classified.matched_rule == "fallback_non_retryable"
    details = classified.to_event_details(provider="openai", model="gpt-4o-mini")
    assert details["failure_class"] == "non_retryable"
    assert details["classifier_version"] == 1

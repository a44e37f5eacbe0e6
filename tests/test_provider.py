from __future__ import annotations

import json

import allure
import httpx
import pytest

from dealflow.config import ProviderSettings
from dealflow.errors import ProviderError
from dealflow.gateway.models import LlmInvokeRequest
from dealflow.gateway.provider import (
    OpenAICompatibleProvider,
    ProviderRouter,
    build_provider_router,
)

pytestmark = [
    allure.epic("LLM Gateway"),
    allure.feature("Providers"),
]

REQUEST = LlmInvokeRequest(
    model_id="gpt-4o-mini",
    prompt="You are a deal analyst.",
    content="Summarize.",
    temperature=0.2,
    top_p=0.9,
)


def _provider(handler, *, api_key: str | None = "sk-test") -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider(
        name="openai",
        base_url="https://llm.test/v1",
        api_key=api_key,
        client=httpx.Client(
            base_url="https://llm.test/v1",
            transport=httpx.MockTransport(handler),
        ),
    )


def test_provider_posts_chat_completion() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    provider = _provider(handler)
    body = provider.complete(REQUEST)
    provider.close()

    assert body["choices"][0]["message"]["content"] == "ok"
    assert seen[0].url.path == "/v1/chat/completions"
    assert seen[0].headers["Authorization"] == "Bearer sk-test"
    payload = json.loads(seen[0].content)
    assert payload["model"] == "gpt-4o-mini"
    assert payload["messages"] == [
        {"role": "system", "content": "You are a deal analyst."},
        {"role": "user", "content": "Summarize."},
    ]
    assert (payload["temperature"], payload["top_p"]) == (0.2, 0.9)


def test_provider_error_response_carries_status() -> None:
    provider = _provider(lambda request: httpx.Response(429, text="Too Many Requests"))

    with pytest.raises(ProviderError) as error:
        provider.complete(REQUEST)
    provider.close()

    assert error.value.status_code == 429



def test_provider_non_json_success_body_raises_provider_error() -> None:
    provider = _provider(
        lambda request: httpx.Response(
            200,
            text="<html>upstream proxy</html>",
            headers={"Content-Type": "text/html"},
        ),
    )

    with pytest.raises(ProviderError, match="non-JSON body") as error:
        provider.complete(REQUEST)
    provider.close()

    assert error.value.status_code == 200
    assert isinstance(error.value.__cause__, ValueError)

def test_provider_without_key_fails_before_http() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no HTTP call expected")

    provider = _provider(handler, api_key=None)

    with pytest.raises(ProviderError, match="api key is not configured"):
        provider.complete(REQUEST)
    provider.close()


def test_router_rejects_unknown_provider() -> None:
    router = build_provider_router(ProviderSettings())

    assert router.names() == ("openai", "perplexity")
    with pytest.raises(ProviderError, match="Unsupported provider"):
        router.get("anthropic")
    router.close()


def test_router_close_skips_providers_without_close() -> None:
    class Bare:
        def complete(self, request):
            return {}

    ProviderRouter({"bare": Bare()}).close()

"""Model provider clients behind the control plane."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from dealflow.config import ProviderSettings
from dealflow.errors import ProviderError
from dealflow.gateway.models import LlmInvokeRequest

logger = logging.getLogger(__name__)


class ChatProvider(Protocol):
    """Performs one chat completion; raises on failure."""

    def complete(self, request: LlmInvokeRequest) -> dict[str, Any]: ...


class OpenAICompatibleProvider:
    """Chat completions over the OpenAI-compatible HTTP API."""

    def __init__(
        self,
        *,
        name: str,
        base_url: str,
        api_key: str | None,
        timeout_seconds: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.name = name
        self._api_key = api_key
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
        )

    def complete(self, request: LlmInvokeRequest) -> dict[str, Any]:
        if not self._api_key:
            raise ProviderError(f"{self.name} api key is not configured")
        logger.debug("Calling %s chat completion for model %s", self.name, request.model_id)
        response = self._client.post(
            "/chat/completions",
            headers={"Authorization": f"Bearer {self._api_key}"},
            json={
                "model": request.model_id,
                "messages": [
                    {"role": "system", "content": request.prompt},
                    {"role": "user", "content": request.content},
                ],
                "temperature": request.temperature,
                "top_p": request.top_p,
            },
        )
        if not response.is_success:
            raise ProviderError(
                f"{self.name} returned HTTP {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{self.name} returned a non-JSON body: {response.text[:200]}",
                status_code=response.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise ProviderError(f"{self.name} returned a non-object body")
        return body

    def close(self) -> None:
        self._client.close()


class ProviderRouter:
    """Look up providers by name."""

    def __init__(self, providers: dict[str, ChatProvider]) -> None:
        self._providers = dict(providers)

    def get(self, name: str) -> ChatProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderError(f"Unsupported provider: {name!r}")
        return provider

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._providers))

    def close(self) -> None:
        for provider in self._providers.values():
            close = getattr(provider, "close", None)
            if callable(close):
                close()


def build_provider_router(settings: ProviderSettings) -> ProviderRouter:
    return ProviderRouter(
        {
            "openai": OpenAICompatibleProvider(
                name="openai",
                base_url=settings.openai_base_url,
                api_key=settings.openai_api_key,
                timeout_seconds=settings.request_timeout_seconds,
            ),
            "perplexity": OpenAICompatibleProvider(
                name="perplexity",
                base_url=settings.perplexity_base_url,
                api_key=settings.perplexity_api_key,
                timeout_seconds=settings.request_timeout_seconds,
            ),
        },
    )

"""Token usage extraction from provider responses."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

CHARS_PER_TOKEN = 4
FALLBACK_COMPLETION_TOKENS = 100


@dataclass(slots=True)
class UsageExtraction:
    """Token counts for one call and where they came from."""

    prompt_tokens: int
    completion_tokens: int
    usage_status: str
    usage_source: str

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def extract_usage(*, response: Mapping[str, Any], prompt: str, content: str) -> UsageExtraction:
    """Read `usage` counters, estimating whichever side the provider left out."""

    usage = response.get("usage")
    reported_prompt = _as_int(usage.get("prompt_tokens")) if isinstance(usage, Mapping) else None
    reported_completion = (
        _as_int(usage.get("completion_tokens")) if isinstance(usage, Mapping) else None
    )

    prompt_tokens = (
        reported_prompt if reported_prompt is not None else estimate_tokens(prompt + content)
    )
    completion_tokens = (
        reported_completion if reported_completion is not None else FALLBACK_COMPLETION_TOKENS
    )
    if reported_prompt is not None and reported_completion is not None:
        status, source = "reported", "provider_usage"
    elif reported_prompt is None and reported_completion is None:
        status, source = "estimated", "character_estimate"
    else:
        status, source = "estimated", "partial_provider_usage"
    return UsageExtraction(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        usage_status=status,
        usage_source=source,
    )


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None

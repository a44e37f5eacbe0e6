"""Token cost estimation for model calls."""

from __future__ import annotations

import os
from dataclasses import dataclass

FALLBACK_MODEL = "gpt-4o-mini"


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


DEFAULT_PRICING: dict[str, ModelPricing] = {
    "gpt-4o-mini": ModelPricing(input_per_1m=0.15, output_per_1m=0.60),
    "gpt-4o": ModelPricing(input_per_1m=2.50, output_per_1m=10.00),
}


def estimate_cost_usd(
    *,
    provider: str,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
) -> float:
    """Estimate call cost in USD from token counts and configured pricing."""

    pricing = lookup_pricing(provider=provider, model=model)
    return (prompt_tokens / 1_000_000) * pricing.input_per_1m + (
        completion_tokens / 1_000_000
    ) * pricing.output_per_1m


def lookup_pricing(*, provider: str, model: str) -> ModelPricing:
    """Resolve pricing: env override, then built-in table, then the fallback model."""

    mapping = _parse_pricing_mapping(os.getenv("DEALFLOW_LLM_PRICING", ""))
    provider_key = provider.strip().lower()
    model_key = model.strip()
    for key in ((provider_key, model_key), (provider_key, "*"), ("*", model_key), ("*", "*")):
        override = mapping.get(key)
        if override is not None:
            return override
    return DEFAULT_PRICING.get(model_key, DEFAULT_PRICING[FALLBACK_MODEL])


def _parse_pricing_mapping(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse `DEALFLOW_LLM_PRICING` mapping.

    Format:
    - `provider:model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - supports wildcards in provider/model (`*`)
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 4:
            continue
        provider, model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        if input_per_1m < 0 or output_per_1m < 0:
            continue
        parsed[(provider.lower(), model)] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed

"""Controllers for LLM gateway CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from dealflow.config import Settings
from dealflow.gateway.models import LlmInvokeRequest
from dealflow.orchestrator.controllers import CliResult
from dealflow.runtime import open_runtime


@dataclass(slots=True)
class LlmInvokeCommand:
    """CLI input for one gateway call."""

    db_path: Path | None
    model_id: str
    model_version: str
    temperature: float
    top_p: float
    prompt: str
    content: str
    deal_id: str | None
    fund_id: str | None
    agent_name: str | None
    execution_id: str | None
    provider: str | None
    output_format: str = "table"


@dataclass(slots=True)
class LlmEventsCommand:
    """CLI input for ops event listing."""

    db_path: Path | None
    event_type: str | None
    limit: int


@dataclass(slots=True)
class LlmCostCommand:
    """CLI input for per-deal spend."""

    db_path: Path | None
    deal_id: str


class GatewayCliController:
    """Coordinates gateway invocation and inspection CLI operations."""

    def invoke(self, command: LlmInvokeCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        request = LlmInvokeRequest(
            model_id=command.model_id,
            model_version=command.model_version,
            temperature=command.temperature,
            top_p=command.top_p,
            prompt=command.prompt,
            content=command.content,
            deal_id=command.deal_id,
            fund_id=command.fund_id,
            agent_name=command.agent_name,
            execution_id=command.execution_id,
            provider=command.provider,
        )
        with open_runtime(settings) as runtime:
            result = runtime.control_plane.invoke(request)

        if command.output_format == "json":
            return CliResult(
                lines=[json.dumps(result.to_dict(), indent=2, ensure_ascii=False)],
                success=result.success,
            )

        lines = [
            f"Success: {'yes' if result.success else 'no'}",
            f"Cache hit: {'yes' if result.cache_hit else 'no'}",
            f"Retries: {result.retry_count}",
            f"Cost: ${result.cost_info.current_cost:.6f} "
            f"(remaining ${result.cost_info.remaining_budget:.2f})",
        ]
        if result.degradation_banner:
            lines.append(f"Degraded: {result.degradation_banner}")
        if result.error:
            lines.append(f"Error: {result.error}")
        if result.response is not None:
            lines.append(f"Response: {_response_text(result.response)}")
        return CliResult(lines=lines, success=result.success)

    def events(self, command: LlmEventsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            events = runtime.gateway_repository.list_ops_events(
                event_type=command.event_type,
                limit=command.limit,
            )
        lines = [f"Ops events: {len(events)}"]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"provider={event.provider or '-'} model={event.model_id or '-'} "
                f"bucket={event.bucket or '-'}",
            )
        return lines

    def cost(self, command: LlmCostCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            spent = runtime.gateway_repository.deal_cost(command.deal_id)
            calls = runtime.gateway_repository.count_cost_records(deal_id=command.deal_id)
        cap = settings.gateway.per_deal_cost_cap
        return [
            f"Deal {command.deal_id}: spent=${spent:.4f} of ${cap:.2f} "
            f"remaining=${max(0.0, cap - spent):.4f} calls={calls}",
        ]


def _response_text(response: dict[str, object]) -> str:
    choices = response.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, dict):
            message = first.get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                return message["content"]
    return json.dumps(response, ensure_ascii=False)

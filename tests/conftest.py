"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from dealflow.config import GatewaySettings, QueueSettings
from dealflow.errors import EngineInvocationError
from dealflow.gateway.control_plane import LlmControlPlane
from dealflow.gateway.models import LlmInvokeRequest
from dealflow.gateway.provider import ProviderRouter
from dealflow.gateway.repository import GatewayRepository
from dealflow.orchestrator.engines import EngineDispatcher
from dealflow.orchestrator.manager import QueueManager
from dealflow.orchestrator.models import JobView
from dealflow.orchestrator.registry import EngineRegistry
from dealflow.orchestrator.repository import QueueRepository

START = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingInvoker:
    """Engine invoker that fails a scripted number of times, then succeeds."""

    def __init__(self, failures: int = 0, message: str = "engine unavailable") -> None:
        self.failures = failures
        self.message = message
        self.calls: list[JobView] = []

    def invoke(self, job: JobView) -> None:
        self.calls.append(job)
        if len(self.calls) <= self.failures:
            raise EngineInvocationError(job.engine, f"{self.message} ({len(self.calls)})")


class FakeProvider:
    """Chat provider returning canned responses or raising scripted errors."""

    def __init__(self, outcomes: list[Any] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.requests: list[LlmInvokeRequest] = []

    def complete(self, request: LlmInvokeRequest) -> dict[str, Any]:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else completion("ok")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def completion(text: str, *, prompt_tokens: int = 1_000, completion_tokens: int = 500) -> dict:
    return {
        "id": "chatcmpl-test",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}}],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "dealflow.db"


@pytest.fixture()
def queue_repository(db_path: Path) -> Iterator[QueueRepository]:
    repository = QueueRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def gateway_repository(queue_repository: QueueRepository) -> Iterator[GatewayRepository]:
    repository = GatewayRepository(queue_repository.db_path)
    yield repository
    repository.close()


@pytest.fixture()
def make_manager(queue_repository: QueueRepository, clock: FakeClock):
    def _make(
        invokers: dict[str, Any] | None = None,
        settings: QueueSettings | None = None,
    ) -> QueueManager:
        return QueueManager(
            repository=queue_repository,
            registry=EngineRegistry(queue_repository),
            dispatcher=EngineDispatcher(invokers or {}),
            settings=settings,
            clock=clock,
            pause=lambda _seconds: None,
        )

    return _make


class RecordingDealWriter:
    def __init__(self) -> None:
        self.deal_ids: list[str] = []

    def set_deal_draft_status(self, deal_id: str) -> None:
        self.deal_ids.append(deal_id)


@pytest.fixture()
def make_control_plane(gateway_repository: GatewayRepository, clock: FakeClock):
    def _make(
        provider: FakeProvider,
        *,
        settings: GatewaySettings | None = None,
        deal_writer: RecordingDealWriter | None = None,
        sleeps: list[float] | None = None,
    ) -> LlmControlPlane:
        recorded = sleeps if sleeps is not None else []
        return LlmControlPlane(
            repository=gateway_repository,
            providers=ProviderRouter({"openai": provider}),
            deal_status_writer=deal_writer or RecordingDealWriter(),
            settings=settings,
            clock=clock,
            sleep=recorded.append,
            rng=_ZeroRandom(),
        )

    return _make


class _ZeroRandom:
    def random(self) -> float:
        return 0.0

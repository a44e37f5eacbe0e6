"""Wiring of repositories, registry, dispatcher and gateway from settings."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

import httpx

from dealflow.config import Settings
from dealflow.gateway.control_plane import LlmControlPlane
from dealflow.gateway.deals import (
    DealStatusWriter,
    HttpDealStatusWriter,
    OpsEventDealStatusWriter,
)
from dealflow.gateway.provider import ProviderRouter, build_provider_router
from dealflow.gateway.repository import GatewayRepository
from dealflow.orchestrator.engines import (
    EngineDispatcher,
    build_default_dispatcher,
    build_functions_client,
)
from dealflow.orchestrator.manager import QueueManager
from dealflow.orchestrator.registry import EngineRegistry
from dealflow.orchestrator.repository import QueueRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Everything a CLI command or HTTP request needs."""

    settings: Settings
    queue_repository: QueueRepository
    gateway_repository: GatewayRepository
    registry: EngineRegistry
    manager: QueueManager
    control_plane: LlmControlPlane
    http_clients: list[httpx.Client] = field(default_factory=list)
    providers: ProviderRouter | None = None

    def close(self) -> None:
        for client in self.http_clients:
            client.close()
        if self.providers is not None:
            self.providers.close()
        self.queue_repository.close()
        self.gateway_repository.close()


def build_runtime(
    settings: Settings,
    *,
    dispatcher: EngineDispatcher | None = None,
    providers: ProviderRouter | None = None,
    deal_status_writer: DealStatusWriter | None = None,
) -> Runtime:
    """Build and migrate the runtime; collaborators may be injected."""

    queue_repository = QueueRepository(
        settings.db_path,
        busy_timeout_ms=settings.queue.busy_timeout_ms,
    )
    queue_repository.init_schema()
    gateway_repository = GatewayRepository(
        settings.db_path,
        busy_timeout_ms=settings.queue.busy_timeout_ms,
    )

    http_clients: list[httpx.Client] = []
    if dispatcher is None:
        functions_client = build_functions_client(
            base_url=settings.engines.functions_base_url,
            api_key=settings.engines.functions_api_key,
            timeout_seconds=settings.engines.request_timeout_seconds,
        )
        http_clients.append(functions_client)
        dispatcher = build_default_dispatcher(functions_client)

    if deal_status_writer is None:
        if settings.engines.deals_base_url:
            deals_client = build_functions_client(
                base_url=settings.engines.deals_base_url,
                api_key=settings.engines.functions_api_key,
                timeout_seconds=settings.engines.request_timeout_seconds,
            )
            http_clients.append(deals_client)
            deal_status_writer = HttpDealStatusWriter(client=deals_client)
        else:
            deal_status_writer = OpsEventDealStatusWriter(repository=gateway_repository)

    owned_providers = providers is None
    if providers is None:
        providers = build_provider_router(settings.providers)

    registry = EngineRegistry(queue_repository)
    manager = QueueManager(
        repository=queue_repository,
        registry=registry,
        dispatcher=dispatcher,
        settings=settings.queue,
    )
    control_plane = LlmControlPlane(
        repository=gateway_repository,
        providers=providers,
        deal_status_writer=deal_status_writer,
        settings=settings.gateway,
    )
    logger.debug("Runtime ready for %s", settings.db_path)
    return Runtime(
        settings=settings,
        queue_repository=queue_repository,
        gateway_repository=gateway_repository,
        registry=registry,
        manager=manager,
        control_plane=control_plane,
        http_clients=http_clients,
        providers=providers if owned_providers else None,
    )


@contextmanager
def open_runtime(settings: Settings) -> Iterator[Runtime]:
    runtime = build_runtime(settings)
    try:
        yield runtime
    finally:
        runtime.close()

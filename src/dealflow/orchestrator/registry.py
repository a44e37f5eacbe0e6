"""Engine registry with an instance-owned configuration cache."""

from __future__ import annotations

import logging
from typing import Protocol

from dealflow.orchestrator.models import EngineAvailability, EngineConfig

logger = logging.getLogger(__name__)


class EngineConfigSource(Protocol):
    """Persistent store the registry loads from and writes through to."""

    def load_engine_configs(self) -> list[EngineConfig]: ...

    def save_engine_config(self, config: EngineConfig) -> None: ...


class StaticEngineSource:
    """In-memory engine source, useful for tests and embedded setups."""

    def __init__(self, configs: list[EngineConfig] | None = None) -> None:
        self._configs = {config.engine_id: config for config in configs or []}

    def load_engine_configs(self) -> list[EngineConfig]:
        return list(self._configs.values())

    def save_engine_config(self, config: EngineConfig) -> None:
        self._configs[config.engine_id] = config


class EngineRegistry:
    """Resolve engine ids to enabled configurations.

    Configs are loaded on first access and kept until ``refresh()``. ``get``
    hides disabled engines so they look exactly like absent ones;
    ``availability`` is the separate existence check that tells them apart.
    """

    def __init__(self, source: EngineConfigSource) -> None:
        self._source = source
        self._configs: dict[str, EngineConfig] | None = None

    def refresh(self) -> dict[str, EngineConfig]:
        configs = {config.engine_id: config for config in self._source.load_engine_configs()}
        self._configs = configs
        logger.debug("Engine registry loaded %d engine(s)", len(configs))
        return configs

    def get(self, engine_id: str) -> EngineConfig | None:
        config = self._all().get(engine_id)
        if config is None or not config.enabled:
            return None
        return config

    def availability(self, engine_id: str) -> EngineAvailability:
        config = self._all().get(engine_id)
        if config is None:
            return EngineAvailability.UNKNOWN
        if not config.enabled:
            return EngineAvailability.DISABLED
        return EngineAvailability.ENABLED

    def for_queue(self, queue_name: str) -> EngineConfig | None:
        """Reverse lookup by queue name, disabled engines included.

        Disabling an engine stops new submissions only; jobs already queued
        under it still drain.
        """

        for config in self._all().values():
            if config.queue_name == queue_name:
                return config
        return None

    def list_engines(self) -> list[EngineConfig]:
        return sorted(self._all().values(), key=lambda config: config.engine_id)

    def register(self, config: EngineConfig) -> None:
        """Persist an engine config and invalidate the cache."""

        if config.max_concurrency <= 0:
            raise ValueError("max_concurrency must be a positive integer.")
        if config.job_ttl_minutes <= 0:
            raise ValueError("job_ttl_minutes must be a positive integer.")
        self._source.save_engine_config(config)
        self._configs = None
        logger.info(
            "Registered engine %s (queue=%s, enabled=%s)",
            config.engine_id,
            config.queue_name,
            config.enabled,
        )

    def _all(self) -> dict[str, EngineConfig]:
        if self._configs is None:
            return self.refresh()
        return self._configs

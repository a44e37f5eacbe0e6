"""Deal record writers used when a deal's cost cap trips."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

import httpx

from dealflow.gateway.repository import GatewayRepository
from dealflow.storage.common import utc_now

logger = logging.getLogger(__name__)

DRAFT_STATUS = "draft"


class DealStatusWriter(Protocol):
    """Flip a deal into the limited/draft analysis state."""

    def set_deal_draft_status(self, deal_id: str) -> None: ...


class HttpDealStatusWriter:
    """PATCH the deal record through the deals REST endpoint."""

    def __init__(self, *, client: httpx.Client) -> None:
        self._client = client

    def set_deal_draft_status(self, deal_id: str) -> None:
        response = self._client.patch(
            f"/deals/{deal_id}",
            json={"analysis_queue_status": DRAFT_STATUS},
        )
        response.raise_for_status()
        logger.info("Deal %s switched to %s analysis status", deal_id, DRAFT_STATUS)


class OpsEventDealStatusWriter:
    """Record the status flip as an ops event when no deals endpoint is configured."""

    def __init__(
        self,
        *,
        repository: GatewayRepository,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._clock = clock

    def set_deal_draft_status(self, deal_id: str) -> None:
        self._repository.record_ops_event(
            event_type="deal_status_draft",
            now=self._clock(),
            details={"deal_id": deal_id, "analysis_queue_status": DRAFT_STATUS},
        )
        logger.info("Deal %s marked %s (ops event only)", deal_id, DRAFT_STATUS)

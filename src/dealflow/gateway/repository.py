"""Response cache, cost ledger, rate-limit buckets and ops events on SQLite."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from dealflow.gateway.models import CostRecordCreate, OpsEventView, RateLimitDecision
from dealflow.orchestrator.keys import CacheKey
from dealflow.storage.alembic_runner import upgrade_head
from dealflow.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    to_db_datetime,
    to_utc_aware_datetime,
)
from dealflow.storage.sqlmodel_models import (
    CostLedgerEntry,
    LlmCacheEntry,
    OpsEvent,
    RateLimitBucket,
)


class GatewayRepository:
    """Narrow persistence surfaces consulted by the LLM control plane."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Response cache

    def get_cached_response(
        self,
        *,
        cache_key: str,
        fresh_after: datetime,
    ) -> dict[str, Any] | None:
        """Return the cached response written strictly after ``fresh_after``."""

        with Session(self.engine) as session:
            row = session.exec(
                select(LlmCacheEntry).where(
                    LlmCacheEntry.cache_key == cache_key,
                    col(LlmCacheEntry.created_at) > to_db_datetime(fresh_after),
                ),
            ).one_or_none()
            if row is None:
                return None
            return load_json_object(row.response_json)

    def store_cached_response(
        self,
        *,
        key: CacheKey,
        model_id: str,
        model_version: str,
        response: dict[str, Any],
        now: datetime,
    ) -> None:
        """Upsert a cache entry; the newest write wins and restarts its TTL."""

        values = {
            "cache_key": key.key,
            "model_id": model_id,
            "model_version": model_version,
            "prompt_hash": key.prompt_hash,
            "content_hash": key.content_hash,
            "response_json": json.dumps(response, ensure_ascii=False),
            "created_at": to_db_datetime(now),
        }
        statement = sqlite_insert(LlmCacheEntry).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=["cache_key"],
            set_={
                "response_json": values["response_json"],
                "created_at": values["created_at"],
            },
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()

    # Cost ledger

    def record_cost(self, record: CostRecordCreate, *, now: datetime) -> None:
        if record.total_cost < 0:
            raise ValueError("Cost records must be non-negative.")
        with Session(self.engine) as session:
            session.add(
                CostLedgerEntry(
                    deal_id=record.deal_id,
                    fund_id=record.fund_id,
                    execution_id=record.execution_id,
                    agent_name=record.agent_name,
                    provider=record.provider,
                    model_id=record.model_id,
                    prompt_tokens=record.prompt_tokens,
                    completion_tokens=record.completion_tokens,
                    total_cost=record.total_cost,
                    created_at=to_db_datetime(now),
                ),
            )
            session.commit()

    def deal_cost(self, deal_id: str) -> float:
        with Session(self.engine) as session:
            total = session.exec(
                select(func.coalesce(func.sum(CostLedgerEntry.total_cost), 0.0)).where(
                    CostLedgerEntry.deal_id == deal_id,
                ),
            ).one()
            return float(total)

    def cost_since(self, since: datetime) -> float:
        with Session(self.engine) as session:
            total = session.exec(
                select(func.coalesce(func.sum(CostLedgerEntry.total_cost), 0.0)).where(
                    col(CostLedgerEntry.created_at) > to_db_datetime(since),
                ),
            ).one()
            return float(total)

    def count_cost_records(self, *, deal_id: str | None = None) -> int:
        statement = select(func.count()).select_from(CostLedgerEntry)
        if deal_id is not None:
            statement = statement.where(CostLedgerEntry.deal_id == deal_id)
        with Session(self.engine) as session:
            return int(session.exec(statement).one())

    # Rate limit buckets

    def consume_rate_limit(
        self,
        *,
        bucket_id: str,
        limit: int,
        window_seconds: int,
        now: datetime,
    ) -> RateLimitDecision:
        """Count one request against a fixed-window bucket.

        Bucket creation, window reset and the bounded increment run in one
        write transaction; a request at or above ``limit`` is rejected and not
        counted.
        """

        db_now = to_db_datetime(now)
        window_start = to_db_datetime(now - timedelta(seconds=window_seconds))
        with Session(self.engine) as session:
            session.exec(
                sqlite_insert(RateLimitBucket)
                .values(bucket_id=bucket_id, requests_count=0, last_reset=db_now)
                .on_conflict_do_nothing(index_elements=["bucket_id"]),
            )
            session.exec(
                sa_update(RateLimitBucket)
                .where(
                    col(RateLimitBucket.bucket_id) == bucket_id,
                    col(RateLimitBucket.last_reset) < window_start,
                )
                .values(requests_count=0, last_reset=db_now),
            )
            result = session.exec(
                sa_update(RateLimitBucket)
                .where(
                    col(RateLimitBucket.bucket_id) == bucket_id,
                    col(RateLimitBucket.requests_count) < limit,
                )
                .values(requests_count=col(RateLimitBucket.requests_count) + 1),
            )
            limited = result.rowcount != 1
            count = session.exec(
                select(RateLimitBucket.requests_count).where(
                    RateLimitBucket.bucket_id == bucket_id,
                ),
            ).one()
            session.commit()
        return RateLimitDecision(bucket=bucket_id, limited=limited, requests_count=int(count))

    def get_bucket_count(self, bucket_id: str) -> int | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(RateLimitBucket).where(RateLimitBucket.bucket_id == bucket_id),
            ).one_or_none()
            return row.requests_count if row is not None else None

    # Ops events

    def record_ops_event(  # noqa: PLR0913
        self,
        *,
        event_type: str,
        now: datetime,
        provider: str | None = None,
        model_id: str | None = None,
        bucket: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                OpsEvent(
                    event_type=event_type,
                    provider=provider,
                    model_id=model_id,
                    bucket=bucket,
                    details_json=dump_json(details) if details else None,
                    created_at=to_db_datetime(now),
                ),
            )
            session.commit()

    def list_ops_events(
        self,
        *,
        event_type: str | None = None,
        limit: int = 50,
    ) -> list[OpsEventView]:
        statement = select(OpsEvent)
        if event_type is not None:
            statement = statement.where(OpsEvent.event_type == event_type)
        statement = statement.order_by(col(OpsEvent.created_at).desc(), col(OpsEvent.id).desc())
        with Session(self.engine) as session:
            rows = session.exec(statement.limit(limit)).all()
            return [
                OpsEventView(
                    event_id=row.id or 0,
                    event_type=row.event_type,
                    provider=row.provider,
                    model_id=row.model_id,
                    bucket=row.bucket,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=load_json_object(row.details_json),
                )
                for row in rows
            ]

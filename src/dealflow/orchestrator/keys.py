"""Stable idempotency and cache key derivation."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime


@dataclass(slots=True, frozen=True)
class CacheKey:
    """Composite LLM cache key with its component hashes."""

    key: str
    prompt_hash: str
    content_hash: str


def sha256_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def idempotency_key(
    *,
    engine_id: str,
    tenant_id: str,
    related_ids: Mapping[str, str | None],
    trigger_reason: str,
    now: datetime,
) -> str:
    """Derive the dedup key for a job submission.

    Related ids are reduced to their non-empty entries and sorted by name. The
    day component is the UTC calendar day of ``now``, so identical submissions
    collapse only within the same day.
    """

    related = sorted(
        [name, str(value)] for name, value in related_ids.items() if value not in (None, "")
    )
    day = _utc_day(now)
    return _hash_parts([engine_id, tenant_id, related, trigger_reason, day])


def cache_key(
    *,
    model_id: str,
    model_version: str,
    temperature: float,
    top_p: float,
    prompt: str,
    content: str,
) -> CacheKey:
    """Derive the response cache key from identity, sampling and content hashes."""

    prompt_hash = sha256_text(prompt)
    content_hash = sha256_text(content)
    key = _hash_parts(
        [model_id, model_version, float(temperature), float(top_p), prompt_hash, content_hash],
    )
    return CacheKey(key=key, prompt_hash=prompt_hash, content_hash=content_hash)


def _utc_day(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).date().isoformat()


def _hash_parts(parts: list[object]) -> str:
    encoded = json.dumps(parts, ensure_ascii=False, separators=(",", ":"))
    return sha256_text(encoded)

"""Mongo-backed read-through cache for supplier search responses.

Uses the app_cache collection with a TTL index on expires_at. The cache is
never authoritative: every error or timeout is logged and treated as a miss,
so request paths always fall through to the supplier.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from app import config
from app.utils import as_utc, canonical_json, now_utc

logger = logging.getLogger("result_cache")

# Correlation noise that must not split logically identical queries.
VOLATILE_FIELDS = frozenset(
    {
        "transaction_identifier",
        "transaction_id",
        "correlation_id",
        "request_id",
        "page",
        "perPage",
        "currentHotelsCount",
        "currentItemsCount",
    }
)


def _strip_volatile(value: Any, volatile: Iterable[str]) -> Any:
    volatile = frozenset(volatile)
    if isinstance(value, Mapping):
        return {k: _strip_volatile(v, volatile) for k, v in value.items() if k not in volatile}
    if isinstance(value, list):
        return [_strip_volatile(v, volatile) for v in value]
    return value


def build_key(namespace: str, query: Mapping[str, Any], *, volatile: Iterable[str] = VOLATILE_FIELDS) -> str:
    """Canonical cache key: volatile fields removed, keys sorted, hashed."""
    normalized = _strip_volatile(dict(query), volatile)
    digest = hashlib.sha256(canonical_json(normalized).encode("utf-8")).hexdigest()[:40]
    return f"{namespace}:{digest}"


class ResultCache:
    def __init__(self, db, *, timeout_seconds: Optional[float] = None) -> None:
        self.db = db
        self.timeout = timeout_seconds if timeout_seconds is not None else config.CACHE_TIMEOUT_SECONDS

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss, expiry or any store error."""
        try:
            doc = await asyncio.wait_for(self.db.app_cache.find_one({"key": key}), timeout=self.timeout)
        except Exception as exc:
            logger.warning("cache get failed key=%s: %s", key, exc)
            return None
        if not doc:
            return None
        expires_at = doc.get("expires_at")
        if expires_at is not None and as_utc(expires_at) <= now_utc():
            return None
        return doc.get("value")

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        now = now_utc()
        try:
            await asyncio.wait_for(
                self.db.app_cache.update_one(
                    {"key": key},
                    {
                        "$set": {
                            "value": value,
                            "expires_at": now + timedelta(seconds=ttl_seconds),
                            "updated_at": now,
                        },
                        "$setOnInsert": {
                            "_id": str(uuid.uuid4()),
                            "created_at": now,
                        },
                    },
                    upsert=True,
                ),
                timeout=self.timeout,
            )
        except Exception as exc:
            logger.warning("cache set failed key=%s: %s", key, exc)

    async def cached(self, key: str, compute_fn: Callable[[], Awaitable[Any]], ttl_seconds: int) -> tuple[Any, bool]:
        """Read-through helper. Returns (value, served_from_cache)."""
        hit = await self.get(key)
        if hit is not None:
            return hit, True
        result = await compute_fn()
        await self.set(key, result, ttl_seconds)
        return result, False

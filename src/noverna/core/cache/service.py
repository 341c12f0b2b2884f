"""
CacheService: fail-open async Redis adapter for Noverna Core.

Purpose
-------
Key/value cache consumed by every storage. Values are JSON documents with a
TTL. The adapter is the single place where cache failures are handled: any
Redis or serialization error is logged, counted, and reported to the caller
as a miss (``None``), ``False`` or ``0``. Storages therefore never see a
cache exception.

Responsibilities
----------------
- Own one redis.asyncio client (connection pool) per instance
- get / set / delete / delete_many / delete_pattern with JSON encoding
- Pattern deletes via a non-blocking SCAN cursor loop (never KEYS)
- Readiness signaling (``is_ready`` / ``await_ready``) and PING health check
- Operation metrics (hits, misses, sets, deletes, errors)

Non-Responsibilities
--------------------
- Deciding what to cache or for how long (storages decide)
- Distributed locking, rate limiting, pub/sub

Architecture Notes
------------------
- Values are encoded with ``json.dumps(default=_json_default)``: datetimes
  and dates become ISO strings, Decimals become floats. A cached row can
  therefore differ in type (not in value) from the row the database returned.
- ``initialize()`` raises CacheError on connection failure so the boot
  RetryPolicy can retry; after that, nothing raises.

Configuration
-------------
- REDIS_URL (default: redis://localhost:6379/0)
- REDIS_MAX_CONNECTIONS (default: 50)
- REDIS_SOCKET_TIMEOUT (default: 5)
- REDIS_SCAN_BATCH_SIZE (default: 500)
"""

from __future__ import annotations

import asyncio
import json
import time
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from redis.asyncio.client import Redis as AsyncRedis
from redis.exceptions import RedisError

from noverna.core.config.config import Config
from noverna.core.exceptions import CacheError
from noverna.core.logging.logger import get_logger
from noverna.core.retry_policy import wait_until

logger = get_logger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class CacheService:
    """
    Fail-open JSON cache over redis.asyncio.

    Public API
    ----------
    **Lifecycle**: initialize(), shutdown()
    **Operations**: get, set, delete, delete_many, delete_pattern
    **Readiness**: is_ready(), await_ready(timeout), health_check()
    **Observability**: get_metrics(), reset_metrics()
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        client: Optional[AsyncRedis] = None,
    ) -> None:
        self._url = url or Config.REDIS_URL
        self._client: Optional[AsyncRedis] = client
        self._owns_client = client is None
        self._ready = False
        self._init_lock = asyncio.Lock()
        self._metrics: Dict[str, int] = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
            "errors": 0,
        }

    # ═══════════════════════════════════════════════════════════════════════
    # LIFECYCLE MANAGEMENT
    # ═══════════════════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """
        Connect and PING. Idempotent.

        Raises
        ------
        CacheError
            If Redis cannot be reached.
        """
        async with self._init_lock:
            if self._ready:
                logger.debug("CacheService already initialized, skipping")
                return

            start_time = time.monotonic()

            try:
                if self._client is None:
                    self._client = AsyncRedis.from_url(
                        self._url,
                        socket_timeout=Config.REDIS_SOCKET_TIMEOUT,
                        decode_responses=True,
                        max_connections=Config.REDIS_MAX_CONNECTIONS,
                        health_check_interval=30,
                    )

                await self._client.ping()
                self._ready = True

                logger.info(
                    "CacheService initialized successfully",
                    extra={
                        "url_scheme": self._url.split("://")[0] if "://" in self._url else "unknown",
                        "initialization_time_ms": round((time.monotonic() - start_time) * 1000, 2),
                    },
                )

            except (RedisError, OSError) as exc:
                self._ready = False
                logger.error(
                    "Failed to initialize CacheService",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                )
                raise CacheError("initialize", exc) from exc

    async def shutdown(self) -> None:
        """Close the client. Safe to call even if not initialized."""
        self._ready = False
        client, self._client = self._client, None

        if client is None:
            logger.debug("CacheService not initialized, nothing to shutdown")
            return

        if not self._owns_client:
            return

        try:
            await client.aclose()
            logger.info("CacheService shutdown complete")
        except (RedisError, OSError) as exc:
            logger.error(
                "Error during CacheService shutdown",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )

    # ═══════════════════════════════════════════════════════════════════════
    # HEALTH & READINESS
    # ═══════════════════════════════════════════════════════════════════════

    def is_ready(self) -> bool:
        return self._ready and self._client is not None

    async def await_ready(self, timeout: float) -> bool:
        return await wait_until(self.is_ready, timeout=timeout)

    async def health_check(self) -> bool:
        """Verify Redis connectivity via PING. Never raises."""
        if self._client is None:
            logger.warning("Health check failed: CacheService not initialized")
            return False

        try:
            start_time = time.monotonic()
            pong = await self._client.ping()
            logger.debug(
                "Redis health check passed",
                extra={"latency_ms": round((time.monotonic() - start_time) * 1000, 2)},
            )
            return bool(pong)
        except (RedisError, OSError) as exc:
            logger.error(
                "Redis health check failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            return False

    # ═══════════════════════════════════════════════════════════════════════
    # OPERATIONS
    # ═══════════════════════════════════════════════════════════════════════

    def _record_error(self, operation: str, key: str, exc: Exception) -> None:
        self._metrics["errors"] += 1
        logger.warning(
            "Cache %s failed; treating as miss",
            operation,
            extra={
                "operation": f"cache.{operation}",
                "key": key,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )

    async def get(self, key: str) -> Optional[Any]:
        """Return the decoded value, or None on miss or any failure."""
        if self._client is None:
            self._metrics["misses"] += 1
            return None

        try:
            raw = await self._client.get(key)
            if raw is None:
                self._metrics["misses"] += 1
                return None
            value = json.loads(raw)
        except (RedisError, OSError, ValueError) as exc:
            self._record_error("get", key, exc)
            return None

        self._metrics["hits"] += 1
        return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Store a JSON-encoded value with an optional TTL in seconds."""
        if self._client is None:
            return False

        try:
            payload = json.dumps(value, default=_json_default)
            result = await self._client.set(key, payload, ex=ttl_seconds if ttl_seconds else None)
        except (RedisError, OSError, TypeError, ValueError) as exc:
            self._record_error("set", key, exc)
            return False

        self._metrics["sets"] += 1
        logger.debug("Cache SET", extra={"key": key, "ttl_seconds": ttl_seconds})
        return bool(result)

    async def delete(self, key: str) -> bool:
        """Delete one key. True if the command succeeded (key may not have existed)."""
        if self._client is None:
            return False

        try:
            await self._client.delete(key)
        except (RedisError, OSError) as exc:
            self._record_error("delete", key, exc)
            return False

        self._metrics["deletes"] += 1
        return True

    async def delete_many(self, keys: Iterable[str]) -> int:
        """Delete several keys in one command; returns number removed."""
        key_list = list(keys)
        if self._client is None or not key_list:
            return 0

        try:
            deleted = int(await self._client.delete(*key_list))
        except (RedisError, OSError) as exc:
            self._record_error("delete_many", ",".join(key_list[:5]), exc)
            return 0

        self._metrics["deletes"] += deleted
        return deleted

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern using SCAN.

        Returns the number of keys removed (0 on failure).
        """
        if self._client is None:
            return 0

        total_deleted = 0
        cursor = 0
        try:
            while True:
                cursor, keys = await self._client.scan(
                    cursor, match=pattern, count=Config.REDIS_SCAN_BATCH_SIZE
                )
                if keys:
                    total_deleted += int(await self._client.delete(*keys))
                if cursor == 0:
                    break
        except (RedisError, OSError) as exc:
            self._record_error("delete_pattern", pattern, exc)
            return total_deleted

        self._metrics["deletes"] += total_deleted
        logger.debug(
            "Cache pattern invalidation",
            extra={"pattern": pattern, "deleted_count": total_deleted},
        )
        return total_deleted

    # ═══════════════════════════════════════════════════════════════════════
    # METRICS
    # ═══════════════════════════════════════════════════════════════════════

    def get_metrics(self) -> Dict[str, Any]:
        lookups = self._metrics["hits"] + self._metrics["misses"]
        hit_rate = (self._metrics["hits"] / lookups * 100) if lookups else 0.0
        return {**self._metrics, "hit_rate": round(hit_rate, 2), "ready": self.is_ready()}

    def reset_metrics(self) -> None:
        for key in self._metrics:
            self._metrics[key] = 0

"""
Base Storage Foundation

Purpose
-------
Provides the cache-aside CRUD foundation every domain storage builds on.
A storage mediates all reads and writes for one entity family between
application code, PostgreSQL (source of truth) and Redis (disposable
projection).

Design Notes
------------
This base class provides:
- Deterministic cache keys: ``prefix:identifier[:suffix]``
- Cache-first single and batch reads with write-through on miss
- Writes that hit the database first, then adjust the cache
- Explicit invalidation helpers (single, many, whole prefix)
- Uncached / custom-key query passthrough
- Readiness gating on both adapters

Every public method returns a ``StorageResult(data, error)``. Expected
failures (missing fields, database errors) are reported in ``error`` and
never raised. Cache failures are absorbed by the cache adapter, so a cache
outage degrades to database reads.

What this class does NOT do:
- Own connections (adapters are injected)
- Track dependencies between cached views; each domain write path lists
  the keys it invalidates explicitly
- De-duplicate concurrent misses for the same key

Consistency
-----------
The database write always precedes the cache update. A crash between the
two leaves the previous cache entry in place until its TTL expires.

Usage
-----
    class UserStorage(BaseStorage):
        def __init__(self, database, cache):
            super().__init__(
                StorageConfig(name="user", cache_prefix="storage:user"),
                database,
                cache,
            )

        async def get_by_license(self, license: str) -> StorageResult:
            return await self.get(
                license,
                "SELECT * FROM users WHERE license = :license",
                {"license": license},
            )
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
)

from noverna.core.exceptions import StorageConfigurationError
from noverna.core.logging.logger import get_logger

if TYPE_CHECKING:
    from noverna.core.cache.service import CacheService
    from noverna.core.database.service import DatabaseService

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600
DEFAULT_READY_TIMEOUT_SECONDS = 10.0

INSERT_FAILED = "Insert failed"

QueryBuilder = Callable[[List[Any]], Tuple[str, Mapping[str, Any]]]

_COLUMN_NAME = re.compile(r"^[a-z_][a-z0-9_]*$")


def build_assignments(
    data: Mapping[str, Any],
    excluded: Iterable[str],
) -> Tuple[List[str], Dict[str, Any]]:
    """
    Turn a partial row into ``column = :column`` fragments for an UPDATE.

    Keys in ``excluded`` are dropped. Keys that are not plain lowercase
    column names raise ValueError since they are interpolated into SQL.
    """
    skip = set(excluded)
    assignments: List[str] = []
    params: Dict[str, Any] = {}
    for column, value in data.items():
        if column in skip:
            continue
        if not _COLUMN_NAME.match(column):
            raise ValueError(f"Invalid field name: {column}")
        assignments.append(f"{column} = :{column}")
        params[column] = value
    return assignments, params


# ============================================================================
# Data Types
# ============================================================================


@dataclass(frozen=True)
class StorageConfig:
    """
    Static configuration of a storage.

    Args:
        name: Registry name (e.g. ``"user"``)
        cache_prefix: Prefix of every cache key this storage writes
        default_ttl: Cache TTL in seconds when a call does not pass one
        enable_cache: When False every call goes straight to the database
    """

    name: str
    cache_prefix: str
    default_ttl: int = DEFAULT_TTL_SECONDS
    enable_cache: bool = True

    def __post_init__(self) -> None:
        if not self.name:
            raise StorageConfigurationError("name")
        if not self.cache_prefix:
            raise StorageConfigurationError("cache_prefix", self.name)


class StorageResult(NamedTuple):
    """``(data, error)`` pair returned by every storage operation."""

    data: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ============================================================================
# BaseStorage
# ============================================================================


class BaseStorage:
    """
    Cache-aside CRUD base class.

    Args:
        config: Storage configuration
        database: Database adapter (``single/query/insert/update/execute``)
        cache: Cache adapter (``get/set/delete/delete_many/delete_pattern``)
    """

    # Registry key used by the storage bootstrap; None registers under config.name.
    registry_name: Optional[str] = None

    def __init__(
        self,
        config: StorageConfig,
        database: DatabaseService,
        cache: CacheService,
    ) -> None:
        self.config = config
        self.database = database
        self.cache = cache

    @property
    def name(self) -> str:
        return self.config.name

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.config.name!r}, prefix={self.config.cache_prefix!r})"

    # ========================================================================
    # Keys
    # ========================================================================

    def cache_key(self, identifier: Any, suffix: Optional[str] = None) -> str:
        """Build ``prefix:identifier`` or ``prefix:identifier:suffix``."""
        key = f"{self.config.cache_prefix}:{identifier}"
        if suffix:
            key = f"{key}:{suffix}"
        return key

    def _ttl(self, ttl: Optional[int]) -> int:
        return ttl if ttl is not None else self.config.default_ttl

    def extract_identifier(self, row: Mapping[str, Any]) -> Any:
        """
        Return the identifier a row is cached under.

        Looks at ``id``, then ``identifier``, then ``license``. Domain storages
        override this when their identifier is a different column.
        """
        for field_name in ("id", "identifier", "license"):
            value = row.get(field_name)
            if value is not None:
                return value
        return None

    # ========================================================================
    # Reads
    # ========================================================================

    async def get(
        self,
        identifier: Any,
        query: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        ttl: Optional[int] = None,
        suffix: Optional[str] = None,
        force_db: bool = False,
    ) -> StorageResult:
        """
        Cache-first single-row read.

        On a miss (or when ``force_db`` is set) the row is loaded from the
        database and written through to the cache. ``(None, None)`` means
        no row exists; a database error leaves the cache untouched.
        """
        key = self.cache_key(identifier, suffix)

        if self.config.enable_cache and not force_db:
            cached = await self.cache.get(key)
            if cached is not None:
                logger.debug(
                    "Storage cache hit",
                    extra={"storage": self.name, "cache_key": key},
                )
                return StorageResult(cached, None)

        row, error = await self.database.single(query, params)
        if error:
            logger.warning(
                "Storage read failed",
                extra={"storage": self.name, "operation": "get", "cache_key": key, "error": error},
            )
            return StorageResult(None, error)

        if row is None:
            return StorageResult(None, None)

        if self.config.enable_cache:
            await self.cache.set(key, row, self._ttl(ttl))

        return StorageResult(row, None)

    async def get_many(
        self,
        identifiers: Sequence[Any],
        query_builder: QueryBuilder,
        *,
        ttl: Optional[int] = None,
        force_db: bool = False,
    ) -> StorageResult:
        """
        Batch read preserving input order.

        Cached identifiers are served from the cache. The rest are loaded
        with one query built by ``query_builder(missing_identifiers)``.
        Identifiers without a backing row are silently omitted.
        """
        if not identifiers:
            return StorageResult([], None)

        found: Dict[Any, Any] = {}
        missing: List[Any] = []

        use_cache = self.config.enable_cache and not force_db
        for identifier in identifiers:
            cached = await self.cache.get(self.cache_key(identifier)) if use_cache else None
            if cached is not None:
                found[identifier] = cached
            else:
                missing.append(identifier)

        if missing:
            query, params = query_builder(missing)
            rows, error = await self.database.query(query, params)
            if error:
                logger.warning(
                    "Storage batch read failed",
                    extra={"storage": self.name, "operation": "get_many", "error": error},
                )
                return StorageResult([], error)

            by_key = {str(identifier): identifier for identifier in missing}
            for row in rows:
                row_identifier = self.extract_identifier(row)
                if row_identifier is None:
                    continue
                # Match on string form so "42" and 42 resolve to the same entry.
                original = by_key.get(str(row_identifier), row_identifier)
                found[original] = row
                if self.config.enable_cache:
                    await self.cache.set(self.cache_key(original), row, self._ttl(ttl))

        ordered = [found[identifier] for identifier in identifiers if identifier in found]
        return StorageResult(ordered, None)

    # ========================================================================
    # Writes
    # ========================================================================

    async def create(
        self,
        query: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        cache_data: Optional[Mapping[str, Any]] = None,
        identifier: Any = None,
        ttl: Optional[int] = None,
    ) -> StorageResult:
        """
        Insert a row (query must ``RETURNING id``) and optionally seed the cache.

        ``cache_data`` is cached at ``identifier`` when given, else at the
        generated id. The generated id is filled into the cached copy when
        ``cache_data`` has no ``id`` of its own.
        """
        new_id, error = await self.database.insert(query, params)
        if error:
            logger.warning(
                "Storage insert failed",
                extra={"storage": self.name, "operation": "create", "error": error},
            )
            return StorageResult(None, error)

        if new_id is None:
            return StorageResult(None, INSERT_FAILED)

        if self.config.enable_cache and cache_data is not None:
            target = identifier if identifier is not None else new_id
            payload = dict(cache_data)
            payload.setdefault("id", new_id)
            await self.cache.set(self.cache_key(target), payload, self._ttl(ttl))

        return StorageResult(new_id, None)

    async def update(
        self,
        identifier: Any,
        query: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        new_data: Optional[Mapping[str, Any]] = None,
        invalidate_only: bool = False,
        suffix: Optional[str] = None,
        ttl: Optional[int] = None,
    ) -> StorageResult:
        """
        Run an UPDATE and adjust the cache entry at ``identifier[:suffix]``.

        With ``new_data`` (and not ``invalidate_only``) the entry is
        overwritten; otherwise it is deleted. Returns the affected row count.
        """
        affected, error = await self.database.update(query, params)
        if error:
            logger.warning(
                "Storage update failed",
                extra={"storage": self.name, "operation": "update", "error": error},
            )
            return StorageResult(None, error)

        if self.config.enable_cache:
            key = self.cache_key(identifier, suffix)
            if new_data is not None and not invalidate_only:
                await self.cache.set(key, dict(new_data), self._ttl(ttl))
            else:
                await self.cache.delete(key)

        return StorageResult(affected, None)

    async def delete(
        self,
        identifier: Any,
        query: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        suffix: Optional[str] = None,
    ) -> StorageResult:
        """Run a DELETE; the cache entry is removed whatever the outcome."""
        affected, error = await self.database.execute(query, params)

        if self.config.enable_cache:
            await self.cache.delete(self.cache_key(identifier, suffix))

        if error:
            logger.warning(
                "Storage delete failed",
                extra={"storage": self.name, "operation": "delete", "error": error},
            )
            return StorageResult(None, error)

        return StorageResult(affected, None)

    async def write_returning(
        self,
        identifier: Any,
        query: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        suffix: Optional[str] = None,
    ) -> StorageResult:
        """
        Run an ``UPDATE``/``DELETE ... RETURNING`` and drop ``identifier[:suffix]``.

        Returns the affected rows so the caller can invalidate views keyed
        by other columns of those rows (an owner id, a username). A failed
        statement leaves the cache untouched.
        """
        rows, error = await self.database.query(query, params)
        if error:
            logger.warning(
                "Storage write failed",
                extra={"storage": self.name, "operation": "write_returning", "error": error},
            )
            return StorageResult(None, error)

        if self.config.enable_cache:
            await self.cache.delete(self.cache_key(identifier, suffix))

        return StorageResult(rows, None)

    # ========================================================================
    # Cache helpers
    # ========================================================================

    async def invalidate_cache(self, identifier: Any, suffix: Optional[str] = None) -> bool:
        if not self.config.enable_cache:
            return True
        return await self.cache.delete(self.cache_key(identifier, suffix))

    async def invalidate_cache_many(
        self, identifiers: Iterable[Any], suffix: Optional[str] = None
    ) -> int:
        if not self.config.enable_cache:
            return 0
        return await self.cache.delete_many(
            [self.cache_key(identifier, suffix) for identifier in identifiers]
        )

    async def invalidate_all(self) -> int:
        """Drop every key under this storage's prefix."""
        if not self.config.enable_cache:
            return 0
        deleted = await self.cache.delete_pattern(f"{self.config.cache_prefix}:*")
        logger.info(
            "Storage cache cleared",
            extra={"storage": self.name, "deleted_count": deleted},
        )
        return deleted

    async def set_cache(
        self,
        identifier: Any,
        data: Any,
        *,
        ttl: Optional[int] = None,
        suffix: Optional[str] = None,
    ) -> bool:
        if not self.config.enable_cache:
            return False
        return await self.cache.set(self.cache_key(identifier, suffix), data, self._ttl(ttl))

    async def get_cache_only(self, identifier: Any, suffix: Optional[str] = None) -> Any:
        if not self.config.enable_cache:
            return None
        return await self.cache.get(self.cache_key(identifier, suffix))

    # ========================================================================
    # Custom queries
    # ========================================================================

    async def custom_query(
        self,
        cache_key: Optional[str],
        query: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        ttl: Optional[int] = None,
        skip_cache: bool = False,
        single: bool = False,
    ) -> StorageResult:
        """
        Run an arbitrary query, optionally cached under a full ``cache_key``.

        ``cache_key=None`` or ``skip_cache`` bypasses the cache. Only
        non-empty results are cached.
        """
        use_cache = self.config.enable_cache and cache_key is not None and not skip_cache

        if use_cache:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return StorageResult(cached, None)

        if single:
            data, error = await self.database.single(query, params)
        else:
            data, error = await self.database.query(query, params)

        if error:
            logger.warning(
                "Storage custom query failed",
                extra={"storage": self.name, "operation": "custom_query", "error": error},
            )
            return StorageResult(None, error)

        if use_cache and data:
            await self.cache.set(cache_key, data, self._ttl(ttl))

        return StorageResult(data, None)

    # ========================================================================
    # Readiness
    # ========================================================================

    async def await_ready(self, timeout: float = DEFAULT_READY_TIMEOUT_SECONDS) -> bool:
        """True once both adapters report ready, False after ``timeout`` seconds."""
        database_ready, cache_ready = await asyncio.gather(
            self.database.await_ready(timeout),
            self.cache.await_ready(timeout),
        )
        ready = bool(database_ready and cache_ready)
        if not ready:
            logger.error(
                "Storage dependencies not ready",
                extra={
                    "storage": self.name,
                    "database_ready": bool(database_ready),
                    "cache_ready": bool(cache_ready),
                    "timeout_seconds": timeout,
                },
            )
        return ready

    def health(self) -> Dict[str, Any]:
        return {
            "name": self.config.name,
            "cache_prefix": self.config.cache_prefix,
            "cache_enabled": self.config.enable_cache,
            "database_ready": self.database.is_ready(),
            "cache_ready": self.cache.is_ready(),
        }

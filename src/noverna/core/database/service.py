"""
Database Service - Core Infrastructure Layer (Noverna)

Purpose
-------
Async PostgreSQL adapter consumed by every storage and by the migration
runner. Wraps a single SQLAlchemy AsyncEngine and exposes a narrow,
text-SQL interface with named ``:param`` placeholders.

Responsibilities
----------------
- Initialize and manage one AsyncEngine with connection pooling
- Execute parameterized statements and return ``(result, error)`` pairs
- Run raw multi-statement SQL batches for migrations
- Signal readiness (``is_ready`` / ``await_ready``) for boot gating
- Expose a lightweight health check

Non-Responsibilities
--------------------
- Caching (handled by CacheService)
- Retry of failed statements (callers decide; boot uses RetryPolicy)
- Schema management (handled by MigrationRunner)
- Domain logic of any kind

Architecture Notes
------------------
**Error Model**:
- No query method raises for database failures. SQLAlchemy errors are
  caught, logged with structured context, and returned as ``str(exc)`` in
  the second slot. Callers propagate that string verbatim.

**Transactions**:
- Each call runs in its own ``engine.begin()`` block: commit on success,
  rollback on exception.

**Raw batches**:
- asyncpg refuses multiple statements in a prepared query, so
  ``raw_query`` hands the batch to the driver connection, which uses the
  simple query protocol (one implicit transaction for the whole batch).

**Connection Pooling**:
- AsyncAdaptedQueuePool normally, NullPool when ENVIRONMENT=testing

Configuration
-------------
- DATABASE_URL (required)
- DATABASE_POOL_SIZE (default: 10)
- DATABASE_MAX_OVERFLOW (default: 10)
- DATABASE_POOL_RECYCLE (default: 1800)
- DATABASE_POOL_TIMEOUT (default: 30)
- DATABASE_ECHO (default: False)

Usage Example
-------------
>>> database = DatabaseService()
>>> await database.initialize()
>>> row, err = await database.single(
...     "SELECT * FROM users WHERE license = :license", {"license": license}
... )
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool, Pool

from noverna.core.config.config import Config
from noverna.core.exceptions import DatabaseError
from noverna.core.logging.logger import get_logger
from noverna.core.retry_policy import wait_until

logger = get_logger(__name__)

Params = Optional[Mapping[str, Any]]
Row = Dict[str, Any]

NOT_INITIALIZED = "Database not initialized"


# ============================================================================
# Configuration Snapshot
# ============================================================================


@dataclass(frozen=True)
class _DatabaseConfigSnapshot:
    """Immutable view of database configuration for the engine's lifetime."""

    url: str
    echo: bool
    pool_class: Type[Pool]
    pool_size: int
    max_overflow: int
    pool_recycle: int
    pool_timeout: int

    @property
    def url_scheme(self) -> str:
        return self.url.split(":", 1)[0] if ":" in self.url else "unknown"

    @classmethod
    def from_config(cls, url: Optional[str] = None) -> _DatabaseConfigSnapshot:
        database_url = url or Config.DATABASE_URL
        if not database_url or not isinstance(database_url, str):
            raise ValueError("DATABASE_URL must be configured as a non-empty string")

        return cls(
            url=database_url,
            echo=Config.DATABASE_ECHO,
            pool_class=NullPool if Config.is_testing() else AsyncAdaptedQueuePool,
            pool_size=Config.DATABASE_POOL_SIZE,
            max_overflow=Config.DATABASE_MAX_OVERFLOW,
            pool_recycle=Config.DATABASE_POOL_RECYCLE,
            pool_timeout=Config.DATABASE_POOL_TIMEOUT,
        )


# ============================================================================
# DatabaseService
# ============================================================================


class DatabaseService:
    """
    Async database adapter with dual-return query methods.

    Public API
    ----------
    **Lifecycle**:
    - initialize() -> Create engine and verify connectivity (raises DatabaseError)
    - shutdown() -> Dispose engine

    **Queries** (all return ``(result, error)``):
    - single(query, params) -> first row as dict or None
    - query(query, params) -> list of dict rows
    - insert(query, params) -> generated id (query must RETURN id)
    - update(query, params) / execute(query, params) -> affected row count
    - raw_query(sql) -> True on success

    **Readiness**:
    - is_ready() / await_ready(timeout) / health_check()
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self._url = url
        self._engine: Optional[AsyncEngine] = engine
        self._owns_engine = engine is None
        self._config_snapshot: Optional[_DatabaseConfigSnapshot] = None
        self._ready = False
        self._init_lock = asyncio.Lock()

    # ========================================================================
    # Initialization & Shutdown
    # ========================================================================

    async def initialize(self) -> None:
        """
        Create the engine (unless one was injected) and verify connectivity.

        Idempotent. Raises DatabaseError when the database is unreachable so
        a RetryPolicy can drive reconnection attempts.
        """
        async with self._init_lock:
            if self._ready:
                logger.debug("DatabaseService already initialized; skipping")
                return

            if self._engine is None:
                try:
                    config = _DatabaseConfigSnapshot.from_config(self._url)
                except ValueError as exc:
                    logger.error("DATABASE_URL is not configured or invalid")
                    raise DatabaseError("initialize", exc) from exc

                engine_kwargs: Dict[str, Any] = {
                    "echo": config.echo,
                    "poolclass": config.pool_class,
                }
                if config.pool_class is AsyncAdaptedQueuePool:
                    engine_kwargs.update(
                        {
                            "pool_size": config.pool_size,
                            "max_overflow": config.max_overflow,
                            "pool_recycle": config.pool_recycle,
                            "pool_timeout": config.pool_timeout,
                            "pool_pre_ping": True,
                        }
                    )

                self._config_snapshot = config
                self._engine = create_async_engine(config.url, **engine_kwargs)

            start = time.perf_counter()
            try:
                async with self._engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            except Exception as exc:
                logger.error(
                    "DatabaseService connection check failed",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                )
                raise DatabaseError("initialize", exc) from exc

            self._ready = True
            logger.info(
                "DatabaseService initialized successfully",
                extra={
                    "url_scheme": (
                        self._config_snapshot.url_scheme
                        if self._config_snapshot
                        else self._engine.url.get_backend_name()
                    ),
                    "connect_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )

    async def shutdown(self) -> None:
        """Dispose the engine. Safe to call multiple times."""
        async with self._init_lock:
            self._ready = False

            if self._engine is None:
                logger.debug("DatabaseService not initialized; nothing to shutdown")
                return

            if not self._owns_engine:
                logger.debug("DatabaseService engine is externally owned; not disposing")
                return

            try:
                await self._engine.dispose()
                logger.info("DatabaseService shutdown complete")
            except Exception as exc:
                logger.error(
                    "Error during DatabaseService shutdown",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                    exc_info=True,
                )
            finally:
                self._engine = None
                self._config_snapshot = None

    # ========================================================================
    # Readiness & Health
    # ========================================================================

    def is_ready(self) -> bool:
        return self._ready and self._engine is not None

    async def await_ready(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for initialize() to succeed."""
        return await wait_until(self.is_ready, timeout=timeout)

    async def health_check(self) -> bool:
        """
        Run ``SELECT 1``. Never raises; returns False on any failure.
        """
        if self._engine is None:
            logger.warning("Health check called on uninitialized DatabaseService")
            return False

        start = time.perf_counter()
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (OperationalError, DBAPIError) as exc:
            logger.warning(
                "Database health check failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            return False
        except Exception as exc:
            logger.error(
                "Unexpected error during database health check",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )
            return False
        finally:
            logger.debug(
                "Database health check completed",
                extra={"duration_ms": round((time.perf_counter() - start) * 1000, 2)},
            )

    # ========================================================================
    # Query Interface
    # ========================================================================

    def _log_failure(self, operation: str, query: str, exc: Exception) -> str:
        logger.warning(
            "Database %s failed",
            operation,
            extra={
                "operation": f"database.{operation}",
                "query": " ".join(query.split())[:200],
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
        return str(exc)

    async def single(self, query: str, params: Params = None) -> Tuple[Optional[Row], Optional[str]]:
        if self._engine is None:
            return None, NOT_INITIALIZED
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(text(query), dict(params or {}))
                row = result.mappings().first()
            return (dict(row) if row is not None else None), None
        except SQLAlchemyError as exc:
            return None, self._log_failure("single", query, exc)

    async def query(self, query: str, params: Params = None) -> Tuple[List[Row], Optional[str]]:
        if self._engine is None:
            return [], NOT_INITIALIZED
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(text(query), dict(params or {}))
                rows = [dict(row) for row in result.mappings().all()]
            return rows, None
        except SQLAlchemyError as exc:
            return [], self._log_failure("query", query, exc)

    async def insert(self, query: str, params: Params = None) -> Tuple[Optional[Any], Optional[str]]:
        """Execute an INSERT ... RETURNING id and return the id."""
        if self._engine is None:
            return None, NOT_INITIALIZED
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(text(query), dict(params or {}))
                inserted_id = result.scalar() if result.returns_rows else None
            return inserted_id, None
        except SQLAlchemyError as exc:
            return None, self._log_failure("insert", query, exc)

    async def execute(self, query: str, params: Params = None) -> Tuple[int, Optional[str]]:
        if self._engine is None:
            return 0, NOT_INITIALIZED
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(text(query), dict(params or {}))
                row_count = max(result.rowcount or 0, 0)
            return row_count, None
        except SQLAlchemyError as exc:
            return 0, self._log_failure("execute", query, exc)

    async def update(self, query: str, params: Params = None) -> Tuple[int, Optional[str]]:
        return await self.execute(query, params)

    async def raw_query(self, sql: str) -> Tuple[Optional[bool], Optional[str]]:
        """
        Execute a raw SQL batch (multiple statements allowed, no parameters).

        Returns ``(True, None)`` on success and ``(None, error)`` otherwise.
        """
        if self._engine is None:
            return None, NOT_INITIALIZED
        try:
            async with self._engine.begin() as conn:
                if conn.dialect.driver == "asyncpg":
                    raw = await conn.get_raw_connection()
                    await raw.driver_connection.execute(sql)
                else:
                    await conn.exec_driver_sql(sql)
            return True, None
        except SQLAlchemyError as exc:
            return None, self._log_failure("raw_query", sql, exc)
        except Exception as exc:
            # Driver-level errors bypass SQLAlchemy's exception wrapping.
            logger.error(
                "Raw SQL batch failed at driver level",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            return None, str(exc)

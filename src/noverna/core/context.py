"""
Application Context (Kernel) - Noverna Core Boot Orchestration
===============================================================

Purpose
-------
Brings the persistence core up in dependency order and tears it down in
reverse. Owns the cache adapter, the database adapter and the storage
registry for the lifetime of the process.

Responsibilities
----------------
- Connect cache, then database, each with the bounded retry policy
- Run pending migrations when DATABASE_MIGRATIONS_ENABLED is set
- Construct and register the storages
- Mark the core ready and fire ``on_ready`` callbacks
- Coordinate shutdown in reverse order
- Structured lifecycle logging with timing

Non-Responsibilities
--------------------
- Storage semantics (delegated to storages)
- Migration semantics (delegated to MigrationRunner)
- Host runtime integration (network events, exports)

Architecture Notes
------------------
Boot stages:
    1. Dependencies: CacheService, then DatabaseService (3 attempts, 5 s apart)
    2. Migrations (optional, failures are logged and boot continues)
    3. Storages (sequential, halts on the first storage that is not ready)
    4. Finalization: ready flag, ``on_ready`` callbacks

A failed stage 1 or 3 is logged at CRITICAL/ERROR and leaves the context
not ready; ``initialize()`` returns False instead of raising.

Shutdown Order (Reverse):
    1. DatabaseService.shutdown()
    2. CacheService.shutdown()
"""

from __future__ import annotations

import inspect
import time
from typing import Any, Awaitable, Callable, List, Optional, Union

from noverna.core.cache.service import CacheService
from noverna.core.config.config import Config
from noverna.core.database.service import DatabaseService
from noverna.core.logging.logger import get_logger
from noverna.core.retry_policy import RetryPolicy
from noverna.migrations.runner import MigrationRunner, MigrationRunResult
from noverna.storage.bootstrap import initialize_storages
from noverna.storage.registry import StorageRegistry

logger = get_logger(__name__)

ReadyCallback = Callable[[], Union[None, Awaitable[None]]]


class ApplicationContext:
    """
    Kernel for boot orchestration and dependency injection.

    Usage:
        context = ApplicationContext()
        if await context.initialize():
            storage = context.registry.require("user")
        ...
        await context.shutdown()
    """

    def __init__(
        self,
        *,
        database: Optional[DatabaseService] = None,
        cache: Optional[CacheService] = None,
        registry: Optional[StorageRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        migration_runner: Optional[MigrationRunner] = None,
    ) -> None:
        self._database = database if database is not None else DatabaseService()
        self._cache = cache if cache is not None else CacheService()
        # An empty registry is falsy (it defines __len__)
        self._registry = registry if registry is not None else StorageRegistry()
        self._retry_policy = retry_policy or RetryPolicy.from_config()
        self._migration_runner = migration_runner
        self._ready_callbacks: List[ReadyCallback] = []
        self._ready = False
        self._initialized = False
        self.last_migration_result: Optional[MigrationRunResult] = None

        logger.debug("ApplicationContext created")

    # ========================================================================
    # INITIALIZATION
    # ========================================================================

    async def initialize(self) -> bool:
        """
        Run boot stages 1 to 4.

        Returns:
            True when the core is ready, False when a stage stopped the boot

        Raises:
            RuntimeError: If already initialized
        """
        if self._initialized:
            raise RuntimeError("ApplicationContext already initialized")
        self._initialized = True

        logger.info("=" * 70)
        logger.info("NOVERNA CORE INITIALIZATION")
        logger.info("=" * 70)

        start_time = time.perf_counter()

        logger.info("Stage 1: Loading dependencies")
        if not await self._connect("cache", self._cache.initialize):
            return False
        if not await self._connect("database", self._database.initialize):
            return False

        if Config.DATABASE_MIGRATIONS_ENABLED:
            logger.info("Stage 2: Running database migrations")
            migrations_start = time.perf_counter()
            runner = self._migration_runner or MigrationRunner(self._database)
            self.last_migration_result = await runner.run_pending_migrations()
            if self.last_migration_result.success:
                logger.info(
                    "✓ Database is ready! Executed %d migrations (%.2fms)",
                    self.last_migration_result.executed,
                    (time.perf_counter() - migrations_start) * 1000,
                )
            else:
                logger.error(
                    "Migration failed! Check logs above.",
                    extra={
                        "failed_version": self.last_migration_result.failed_version,
                        "checksum_mismatch": self.last_migration_result.checksum_mismatch,
                    },
                )
        else:
            logger.info("Stage 2: Database migrations are disabled via configuration")

        logger.info("Stage 3: Loading storages")
        storages_start = time.perf_counter()
        if not await initialize_storages(self._registry, self._database, self._cache):
            logger.critical("Storage initialization failed; core is not ready")
            return False
        logger.info("✓ Storages registered (%.2fms)", (time.perf_counter() - storages_start) * 1000)

        logger.info("Stage 4: Finalization")
        self._ready = True
        await self._fire_ready_callbacks()

        logger.info("=" * 70)
        logger.info("✓ Noverna core ready")
        logger.info("  Total time: %.2fms", (time.perf_counter() - start_time) * 1000)
        logger.info("=" * 70)
        return True

    async def _connect(self, name: str, connect: Callable[[], Awaitable[None]]) -> bool:
        step_start = time.perf_counter()
        try:
            await self._retry_policy.execute(connect, operation_name=f"{name}.connect")
        except Exception as exc:
            logger.critical(
                "CRITICAL: %s failed to load after retries",
                name.capitalize(),
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            return False

        logger.info("✓ %s loaded (%.2fms)", name.capitalize(), (time.perf_counter() - step_start) * 1000)
        return True

    # ========================================================================
    # READY CALLBACKS
    # ========================================================================

    async def on_ready(self, callback: ReadyCallback) -> None:
        """Run ``callback`` once the core is ready (immediately if it already is)."""
        if self._ready:
            await self._invoke(callback)
        else:
            self._ready_callbacks.append(callback)

    async def _invoke(self, callback: ReadyCallback) -> None:
        try:
            outcome: Any = callback()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.error(
                "Error in ready callback",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=True,
            )

    async def _fire_ready_callbacks(self) -> None:
        callbacks, self._ready_callbacks = self._ready_callbacks, []
        for callback in callbacks:
            await self._invoke(callback)

    # ========================================================================
    # GRACEFUL SHUTDOWN
    # ========================================================================

    async def shutdown(self) -> None:
        """Shut down in reverse order. Errors are logged, never raised."""
        if not self._initialized:
            logger.warning("ApplicationContext not initialized, nothing to shut down")
            return

        logger.info("=" * 70)
        logger.info("NOVERNA CORE SHUTDOWN")
        logger.info("=" * 70)

        self._ready = False

        for name, service in (("DatabaseService", self._database), ("CacheService", self._cache)):
            try:
                await service.shutdown()
                logger.info("✓ %s shut down", name)
            except Exception as exc:
                logger.error(
                    "Error shutting down %s",
                    name,
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                    exc_info=True,
                )

        self._initialized = False
        logger.info("✓ Noverna core shutdown complete")

    # ========================================================================
    # PROPERTIES
    # ========================================================================

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def registry(self) -> StorageRegistry:
        return self._registry

    @property
    def database(self) -> DatabaseService:
        return self._database

    @property
    def cache(self) -> CacheService:
        return self._cache

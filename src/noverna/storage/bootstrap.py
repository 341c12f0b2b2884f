"""
Storage bootstrap.

Builds the built-in storages, waits for each one's adapters and registers
it under its ``registry_name`` (``"log"`` for the audit log storage) or,
by default, its storage name. Storages are brought up one at a time in a
fixed order; the first one that does not become ready stops the
bootstrap, leaving only the storages before it registered.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Callable, List, Optional, Type

from noverna.core.config.config import Config
from noverna.core.logging.logger import get_logger
from noverna.storage.base import BaseStorage
from noverna.storage.character import CharacterStorage
from noverna.storage.logs import LogStorage
from noverna.storage.penalty import PenaltyStorage
from noverna.storage.registry import StorageRegistry
from noverna.storage.system_logs import SystemLogStorage
from noverna.storage.user import UserStorage

if TYPE_CHECKING:
    from noverna.core.cache.service import CacheService
    from noverna.core.database.service import DatabaseService

logger = get_logger(__name__)

StorageFactory = Callable[["DatabaseService", "CacheService"], BaseStorage]

BUILTIN_STORAGES: List[Type[BaseStorage]] = [
    UserStorage,
    CharacterStorage,
    PenaltyStorage,
    LogStorage,
    SystemLogStorage,
]


async def initialize_storages(
    registry: StorageRegistry,
    database: DatabaseService,
    cache: CacheService,
    timeout: Optional[float] = None,
    factories: Optional[List[StorageFactory]] = None,
) -> bool:
    """
    Construct, await and register the storages in order.

    Args:
        registry: Registry to populate
        database: Shared database adapter
        cache: Shared cache adapter
        timeout: Per-storage readiness timeout in seconds
            (default STORAGE_READY_TIMEOUT_SECONDS)
        factories: Override of the built-in storage list (tests, plugins)

    Returns:
        True when every storage was registered
    """
    wait = timeout if timeout is not None else Config.STORAGE_READY_TIMEOUT_SECONDS
    start = time.perf_counter()

    logger.info("Initializing storages...")

    for factory in factories or BUILTIN_STORAGES:
        storage = factory(database, cache)

        if not await storage.await_ready(wait):
            logger.error(
                "Failed to initialize %s",
                type(storage).__name__,
                extra={"storage": storage.name, "timeout_seconds": wait},
            )
            return False

        registry.register(storage.registry_name or storage.name, storage)

    logger.info(
        "All storages initialized and registered successfully",
        extra={
            "storages": registry.names(),
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
        },
    )
    return True

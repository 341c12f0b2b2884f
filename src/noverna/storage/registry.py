"""
Storage Registry

Name-based lookup of storage instances. One registry is constructed per
process by the application context and handed to every consumer; there is
no module-level instance.

Registering a name twice replaces the earlier storage (last write wins)
and logs a warning.
"""

from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from noverna.core.exceptions import StorageNotFoundError
from noverna.core.logging.logger import get_logger
from noverna.storage.base import DEFAULT_READY_TIMEOUT_SECONDS, BaseStorage

logger = get_logger(__name__)


class StorageRegistry:
    """
    Registry of named storages.

    Public API
    ----------
    - register(name, storage) -> Add or replace
    - get(name) -> Storage or None (logs an error on miss)
    - require(name) -> Storage or raise StorageNotFoundError
    - has(name) / names() / ``name in registry`` / ``len(registry)``
    - await_all(timeout) -> Every registered storage ready
    """

    def __init__(self) -> None:
        self._storages: Dict[str, BaseStorage] = {}

    def register(self, name: str, storage: BaseStorage) -> None:
        if name in self._storages:
            logger.warning(
                "Storage '%s' is already registered. Overwriting...",
                name,
                extra={"storage": name},
            )
        self._storages[name] = storage
        logger.debug("Storage '%s' registered successfully", name, extra={"storage": name})

    def get(self, name: str) -> Optional[BaseStorage]:
        storage = self._storages.get(name)
        if storage is None:
            logger.error("Storage '%s' not found", name, extra={"storage": name})
        return storage

    def require(self, name: str) -> BaseStorage:
        storage = self._storages.get(name)
        if storage is None:
            raise StorageNotFoundError(name, self.names())
        return storage

    def has(self, name: str) -> bool:
        return name in self._storages

    def names(self) -> List[str]:
        return list(self._storages)

    def __contains__(self, name: object) -> bool:
        return name in self._storages

    def __len__(self) -> int:
        return len(self._storages)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._storages))

    async def await_all(self, timeout: float = DEFAULT_READY_TIMEOUT_SECONDS) -> bool:
        """Wait for each registered storage in turn; False at the first one that is not ready."""
        for name, storage in list(self._storages.items()):
            logger.debug("Waiting for storage '%s' to be ready...", name)
            if not await storage.await_ready(timeout):
                logger.error("Storage '%s' failed to initialize", name, extra={"storage": name})
                return False

        logger.info("All storages are ready", extra={"storage_count": len(self._storages)})
        return True

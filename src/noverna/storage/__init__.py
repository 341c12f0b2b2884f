"""
Storage layer for Noverna Core.

Cache-aside storages over PostgreSQL and Redis, the registry that names
them, and the bootstrap that brings the built-in ones up.
"""

from noverna.storage.base import BaseStorage, StorageConfig, StorageResult
from noverna.storage.bootstrap import initialize_storages
from noverna.storage.character import CharacterStorage
from noverna.storage.logs import (
    ActionCategory,
    ActionSeverity,
    ConnectionType,
    LogAccountType,
    LogLevel,
    LogStorage,
    RespawnType,
)
from noverna.storage.penalty import PenaltyStorage
from noverna.storage.registry import StorageRegistry
from noverna.storage.system_logs import SystemLogStorage
from noverna.storage.user import UserStorage

__all__ = [
    "ActionCategory",
    "ActionSeverity",
    "BaseStorage",
    "CharacterStorage",
    "ConnectionType",
    "LogAccountType",
    "LogLevel",
    "LogStorage",
    "PenaltyStorage",
    "RespawnType",
    "StorageConfig",
    "StorageRegistry",
    "StorageResult",
    "SystemLogStorage",
    "UserStorage",
    "initialize_storages",
]

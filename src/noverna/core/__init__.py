"""
Core infrastructure layer for Noverna.

Purpose
-------
Single import surface for the infrastructure primitives every other layer
uses:

- Configuration (Config)
- PostgreSQL adapter (DatabaseService)
- Redis adapter (CacheService)
- Logging (structured logging, logger factory)
- Infrastructure exceptions

Design Decisions
----------------
- Thin on purpose: re-exports only, no I/O at import.
- ``ApplicationContext`` is not re-exported here because it imports the
  storage and migration layers; import it from ``noverna.core.context``.
"""

from __future__ import annotations

from noverna.core.cache import CacheService
from noverna.core.config import Config, Environment
from noverna.core.database import DatabaseService
from noverna.core.exceptions import (
    CacheError,
    ConfigurationError,
    DatabaseError,
    ErrorSeverity,
    MigrationError,
    NovernaInfrastructureException,
    RenewNotAllowedError,
    StorageConfigurationError,
    StorageNotFoundError,
)
from noverna.core.logging import LogContext, get_logger, setup_logging

__all__ = [
    # Configuration
    "Config",
    "Environment",
    # Adapters
    "CacheService",
    "DatabaseService",
    # Logging
    "LogContext",
    "get_logger",
    "setup_logging",
    # Exceptions
    "NovernaInfrastructureException",
    "ConfigurationError",
    "StorageConfigurationError",
    "StorageNotFoundError",
    "DatabaseError",
    "CacheError",
    "MigrationError",
    "RenewNotAllowedError",
    "ErrorSeverity",
]

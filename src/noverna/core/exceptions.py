"""
Infrastructure exceptions for Noverna Core.

Only a handful of failures in the persistence core are raised:

- misconfiguration (a storage without name or prefix, a bad config key)
- a storage requested by a name nobody registered
- an adapter that cannot connect during boot (retried by RetryPolicy)
- destructive schema commands outside a development environment

Everything else (missing row, failed write, cache outage, migration SQL
error) is reported as a value: the second slot of a ``StorageResult`` or a
``MigrationRunResult`` with ``success=False``.

Every exception here derives from ``NovernaInfrastructureException`` and
exposes ``message``, ``details``, ``severity``, ``is_retryable`` and a
stable ``error_code``, plus ``to_dict()`` for structured logs.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional


class ErrorSeverity(Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class NovernaInfrastructureException(Exception):
    """
    Root of the infrastructure exception tree.

    Subclasses set ``code``, ``severity_default`` and ``retryable_default``
    as class attributes; instances may override severity and retryability.
    """

    code: ClassVar[str] = "INFRASTRUCTURE_ERROR"
    severity_default: ClassVar[ErrorSeverity] = ErrorSeverity.ERROR
    retryable_default: ClassVar[bool] = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        severity: Optional[ErrorSeverity] = None,
        is_retryable: Optional[bool] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})
        self.severity = severity if severity is not None else self.severity_default
        self.is_retryable = self.retryable_default if is_retryable is None else is_retryable
        self.error_code = error_code or self.code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "severity": self.severity.value,
            "is_retryable": self.is_retryable,
        }

    def __str__(self) -> str:
        if not self.details:
            return f"[{self.error_code}] {self.message}"
        return f"[{self.error_code}] {self.message} | Details: {self.details}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, error_code={self.error_code!r})"


# ============================================================================
# Configuration
# ============================================================================


class ConfigurationError(NovernaInfrastructureException):
    code = "CONFIG_ERROR"
    severity_default = ErrorSeverity.CRITICAL

    def __init__(self, config_key: str, problem: str) -> None:
        self.config_key = config_key
        super().__init__(
            f"Invalid configuration '{config_key}': {problem}",
            {"config_key": config_key, "problem": problem},
        )


class StorageConfigurationError(ConfigurationError):
    """A StorageConfig was built without ``name`` or ``cache_prefix``."""

    code = "STORAGE_CONFIG_ERROR"

    def __init__(self, field_name: str, storage_name: Optional[str] = None) -> None:
        self.storage_name = storage_name
        super().__init__(f"storage.{field_name}", "must be a non-empty string")
        if storage_name:
            self.details["storage"] = storage_name


class StorageNotFoundError(NovernaInfrastructureException):
    """Raised by ``StorageRegistry.require`` for an unregistered name."""

    code = "STORAGE_NOT_FOUND"

    def __init__(self, name: str, available: Optional[List[str]] = None) -> None:
        self.name = name
        super().__init__(
            f"Storage not found: {name}",
            {"name": name, "available": list(available or [])},
        )


# ============================================================================
# Adapter connection failures (boot only)
# ============================================================================


class _AdapterError(NovernaInfrastructureException):
    retryable_default = True
    subsystem: ClassVar[str] = "adapter"

    def __init__(self, operation: str, original_error: Exception) -> None:
        self.operation = operation
        self.original_error = original_error
        super().__init__(
            f"{self.subsystem.capitalize()} {operation} failed: {original_error}",
            {
                "operation": operation,
                "error": str(original_error),
                "error_type": type(original_error).__name__,
            },
        )


class DatabaseError(_AdapterError):
    """The database could not be reached or configured while connecting."""

    code = "DATABASE_ERROR"
    subsystem = "database"


class CacheError(_AdapterError):
    """Redis could not be reached while connecting. Later cache calls fail open instead."""

    code = "CACHE_ERROR"
    subsystem = "cache"
    severity_default = ErrorSeverity.WARNING


# ============================================================================
# Migrations
# ============================================================================


class MigrationError(NovernaInfrastructureException):
    code = "MIGRATION_ERROR"
    severity_default = ErrorSeverity.CRITICAL


class RenewNotAllowedError(MigrationError):
    """``renew_database`` needs ENVIRONMENT=development and DATABASE_COMMANDS_ENABLED."""

    code = "RENEW_NOT_ALLOWED"

    def __init__(self, environment: str, commands_enabled: bool) -> None:
        super().__init__(
            "Database renew is only available in development with DATABASE_COMMANDS_ENABLED=true",
            {"environment": environment, "commands_enabled": commands_enabled},
        )


def is_transient_error(exc: BaseException) -> bool:
    """True for infrastructure errors flagged retryable."""
    return isinstance(exc, NovernaInfrastructureException) and exc.is_retryable

"""
Log Storage

Append-only audit logs kept in the ``logs`` schema of the main database.
Every log kind has a ``create_*`` method (insert one entry) and a
``fetch_*`` method (filtered, paginated, newest first). Fetches are never
cached: log tables grow continuously and are read rarely.

The kinds share one implementation driven by a ``LogTable`` description:
target table, insertable columns, required fields, defaults, JSON columns
and allowed equality filters.

| kind          | table               |
|---------------|---------------------|
| system        | logs.system         |
| player_action | logs.player_actions |
| chat          | logs.chat           |
| admin_action  | logs.admin_actions  |
| economy       | logs.economy        |
| connection    | logs.connections    |
| security      | logs.security       |
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from noverna.core.logging.logger import get_logger
from noverna.storage.base import BaseStorage, StorageConfig, StorageResult

if TYPE_CHECKING:
    from noverna.core.cache.service import CacheService
    from noverna.core.database.service import DatabaseService

logger = get_logger(__name__)

DEFAULT_FETCH_LIMIT = 100


# ============================================================================
# Enumerations (mirror the PostgreSQL enum types)
# ============================================================================


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


class ActionCategory(str, Enum):
    AUTHENTICATION = "auth"
    CHARACTER = "character"
    GAMEPLAY = "gameplay"
    ECONOMY = "economy"
    SOCIAL = "social"
    ADMIN = "admin"
    OTHER = "other"


class ActionSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LogAccountType(str, Enum):
    CASH = "cash"
    BANK = "bank"
    CRYPTO = "crypto"
    COMPANY = "company"
    OTHER = "other"


class ConnectionType(str, Enum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    TIMEOUT = "timeout"
    KICKED = "kicked"
    BANNED = "banned"


class RespawnType(str, Enum):
    HOSPITAL = "hospital"
    EMS = "ems"
    ADMIN = "admin"
    BLEEDOUT = "bleedout"


# ============================================================================
# Table descriptions
# ============================================================================


@dataclass(frozen=True)
class LogTable:
    """Shape of one log table as seen by the storage."""

    table: str
    columns: Tuple[str, ...]
    required: Tuple[str, ...]
    filters: Tuple[str, ...]
    defaults: Mapping[str, Any] = field(default_factory=dict)
    json_columns: Tuple[str, ...] = ("metadata",)

    def missing_fields(self, data: Mapping[str, Any]) -> List[str]:
        return [name for name in self.required if data.get(name) is None or data.get(name) == ""]

    def insert_params(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        for column in self.columns:
            value = data.get(column)
            if value is None:
                value = self.defaults.get(column)
            if isinstance(value, Enum):
                value = value.value
            if column in self.json_columns and value is not None:
                value = json.dumps(value, default=str)
            params[column] = value
        return params

    def insert_query(self) -> str:
        return (
            f"INSERT INTO {self.table} ({', '.join(self.columns)}) "
            f"VALUES ({', '.join(':' + column for column in self.columns)}) "
            "RETURNING id"
        )

    def select_query(
        self,
        filters: Optional[Mapping[str, Any]],
        limit: int,
        offset: int,
    ) -> Tuple[str, Dict[str, Any]]:
        conditions: List[str] = []
        params: Dict[str, Any] = {"limit": int(limit), "offset": int(offset)}

        for name in self.filters:
            value = (filters or {}).get(name)
            if value is None:
                continue
            conditions.append(f"{name} = :{name}")
            params[name] = value.value if isinstance(value, Enum) else value

        from_date = (filters or {}).get("from_date")
        if from_date is not None:
            conditions.append("created_at >= :from_date")
            params["from_date"] = _as_timestamp(from_date)

        to_date = (filters or {}).get("to_date")
        if to_date is not None:
            conditions.append("created_at <= :to_date")
            params["to_date"] = _as_timestamp(to_date)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        query = (
            f"SELECT * FROM {self.table} {where} "
            "ORDER BY created_at DESC LIMIT :limit OFFSET :offset"
        )
        return query, params


def _as_timestamp(value: Any) -> Any:
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


SYSTEM_LOGS = LogTable(
    table="logs.system",
    columns=(
        "level", "category", "message", "stack_trace", "resource_name",
        "source_file", "line_number", "metadata", "server_id", "server_uptime",
    ),
    required=("level", "category", "message"),
    filters=("level", "category", "resource_name"),
)

PLAYER_ACTION_LOGS = LogTable(
    table="logs.player_actions",
    columns=(
        "source", "license", "character_id", "player_name", "action_type",
        "action_category", "description", "position", "zone", "target_player",
        "target_entity", "metadata", "ip_address", "session_id",
    ),
    required=("source", "license", "action_type"),
    filters=("license", "character_id", "action_type", "action_category"),
    defaults={"action_category": ActionCategory.OTHER.value},
    json_columns=("position", "metadata"),
)

CHAT_LOGS = LogTable(
    table="logs.chat",
    columns=(
        "source", "license", "character_id", "sender_name", "channel", "message",
        "recipient_character_id", "recipient_name", "position", "zone",
        "is_command", "is_blocked", "block_reason", "metadata",
    ),
    required=("source", "license", "channel", "message"),
    filters=("license", "character_id", "channel"),
    defaults={"is_command": False, "is_blocked": False},
    json_columns=("position", "metadata"),
)

ADMIN_ACTION_LOGS = LogTable(
    table="logs.admin_actions",
    columns=(
        "admin_license", "admin_character_id", "admin_name", "action_type",
        "action_severity", "command_used", "description", "target_license",
        "target_character_id", "target_name", "reason", "duration", "metadata",
        "success", "error_message",
    ),
    required=("admin_license", "action_type"),
    filters=("admin_license", "target_license", "action_type"),
    defaults={"action_severity": ActionSeverity.MEDIUM.value, "success": True},
)

ECONOMY_LOGS = LogTable(
    table="logs.economy",
    columns=(
        "license", "character_id", "player_name", "transaction_type", "amount",
        "account_type", "balance_before", "balance_after", "reason", "source",
        "target_player", "company_id", "metadata",
    ),
    required=("license", "transaction_type", "amount"),
    filters=("license", "character_id", "transaction_type"),
    defaults={"account_type": LogAccountType.CASH.value},
)

CONNECTION_LOGS = LogTable(
    table="logs.connections",
    columns=(
        "license", "player_name", "connection_type", "ip_address", "identifiers",
        "session_id", "session_duration", "reason", "kicked_by", "hardware_id",
        "metadata",
    ),
    required=("license", "connection_type"),
    filters=("license", "connection_type"),
    json_columns=("identifiers", "metadata"),
)

SECURITY_LOGS = LogTable(
    table="logs.security",
    columns=(
        "source", "license", "character_id", "player_name", "event_type",
        "severity", "description", "detection_method", "triggered_rule",
        "evidence", "action_taken", "auto_action", "ip_address", "session_id",
        "metadata",
    ),
    required=("source", "license", "event_type", "description"),
    filters=("license", "event_type", "severity"),
    defaults={"severity": ActionSeverity.MEDIUM.value, "auto_action": False},
    json_columns=("evidence", "metadata"),
)


# ============================================================================
# LogStorage
# ============================================================================


class LogStorage(BaseStorage):
    """Create and query audit log entries."""

    registry_name = "log"

    def __init__(self, database: DatabaseService, cache: CacheService) -> None:
        super().__init__(
            StorageConfig(name="logs", cache_prefix="storage:logs", default_ttl=1800),
            database,
            cache,
        )

    async def _create_entry(self, log_table: LogTable, data: Mapping[str, Any]) -> StorageResult:
        missing = log_table.missing_fields(data)
        if missing:
            return StorageResult(None, f"Missing required fields: {', '.join(log_table.required)}")

        result = await self.create(log_table.insert_query(), log_table.insert_params(data))
        if result.error:
            logger.error(
                "Failed to write log entry",
                extra={"storage": self.name, "table": log_table.table, "error": result.error},
            )
        return result

    async def _fetch_entries(
        self,
        log_table: LogTable,
        filters: Optional[Mapping[str, Any]],
        limit: int,
        offset: int,
    ) -> StorageResult:
        try:
            query, params = log_table.select_query(filters, limit, offset)
        except ValueError as exc:
            return StorageResult(None, f"Invalid date filter: {exc}")
        return await self.custom_query(None, query, params)

    # ------------------------------------------------------------------ system

    async def create_system_log(self, data: Mapping[str, Any]) -> StorageResult:
        return await self._create_entry(SYSTEM_LOGS, data)

    async def fetch_system_logs(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = DEFAULT_FETCH_LIMIT,
        offset: int = 0,
    ) -> StorageResult:
        """
        Filter keys: ``level``, ``category``, ``resource_name``,
        ``from_date``, ``to_date``.
        """
        return await self._fetch_entries(SYSTEM_LOGS, filters, limit, offset)

    # ----------------------------------------------------------- player action

    async def create_player_action_log(self, data: Mapping[str, Any]) -> StorageResult:
        return await self._create_entry(PLAYER_ACTION_LOGS, data)

    async def fetch_player_action_logs(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = DEFAULT_FETCH_LIMIT,
        offset: int = 0,
    ) -> StorageResult:
        return await self._fetch_entries(PLAYER_ACTION_LOGS, filters, limit, offset)

    # -------------------------------------------------------------------- chat

    async def create_chat_log(self, data: Mapping[str, Any]) -> StorageResult:
        return await self._create_entry(CHAT_LOGS, data)

    async def fetch_chat_logs(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = DEFAULT_FETCH_LIMIT,
        offset: int = 0,
    ) -> StorageResult:
        return await self._fetch_entries(CHAT_LOGS, filters, limit, offset)

    # ------------------------------------------------------------ admin action

    async def create_admin_action_log(self, data: Mapping[str, Any]) -> StorageResult:
        return await self._create_entry(ADMIN_ACTION_LOGS, data)

    async def fetch_admin_action_logs(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = DEFAULT_FETCH_LIMIT,
        offset: int = 0,
    ) -> StorageResult:
        return await self._fetch_entries(ADMIN_ACTION_LOGS, filters, limit, offset)

    # ----------------------------------------------------------------- economy

    async def create_economy_log(self, data: Mapping[str, Any]) -> StorageResult:
        return await self._create_entry(ECONOMY_LOGS, data)

    async def fetch_economy_logs(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = DEFAULT_FETCH_LIMIT,
        offset: int = 0,
    ) -> StorageResult:
        return await self._fetch_entries(ECONOMY_LOGS, filters, limit, offset)

    # -------------------------------------------------------------- connection

    async def create_connection_log(self, data: Mapping[str, Any]) -> StorageResult:
        return await self._create_entry(CONNECTION_LOGS, data)

    async def fetch_connection_logs(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = DEFAULT_FETCH_LIMIT,
        offset: int = 0,
    ) -> StorageResult:
        return await self._fetch_entries(CONNECTION_LOGS, filters, limit, offset)

    # ---------------------------------------------------------------- security

    async def create_security_log(self, data: Mapping[str, Any]) -> StorageResult:
        return await self._create_entry(SECURITY_LOGS, data)

    async def fetch_security_logs(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = DEFAULT_FETCH_LIMIT,
        offset: int = 0,
    ) -> StorageResult:
        return await self._fetch_entries(SECURITY_LOGS, filters, limit, offset)

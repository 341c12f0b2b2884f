"""
System Log Storage

Read-heavy access to ``logs.system`` for dashboards and admin tooling.
Unlike ``LogStorage.fetch_system_logs`` the common listings here are cached
briefly, and a retention sweep is provided.

Cache keys (prefix ``storage:logs:system``)
-------------------------------------------
- ``<id>``: single entry
- ``level|category|resource:<value>:<limit>:<offset>``: listings (5 minutes)
- ``recent:<limit>``: newest entries (1 minute)
- ``count:level:<level>``: counts (10 minutes)

``delete_old_logs`` clears the whole prefix afterwards.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping, Union

from noverna.core.logging.logger import get_logger
from noverna.storage.base import BaseStorage, StorageConfig, StorageResult
from noverna.storage.logs import SYSTEM_LOGS, LogLevel

if TYPE_CHECKING:
    from noverna.core.cache.service import CacheService
    from noverna.core.database.service import DatabaseService

logger = get_logger(__name__)

DEFAULT_RESOURCE_NAME = "noverna-core"
LIST_TTL_SECONDS = 300
RECENT_TTL_SECONDS = 60
COUNT_TTL_SECONDS = 600


def _value(value: Union[str, Enum]) -> str:
    return value.value if isinstance(value, Enum) else value


class SystemLogStorage(BaseStorage):
    """Cached queries over ``logs.system``."""

    def __init__(self, database: DatabaseService, cache: CacheService) -> None:
        super().__init__(
            StorageConfig(name="log_system", cache_prefix="storage:logs:system", default_ttl=1800),
            database,
            cache,
        )

    def extract_identifier(self, row: Mapping[str, Any]) -> Any:
        return row.get("id")

    async def create_log(self, data: Mapping[str, Any]) -> StorageResult:
        if SYSTEM_LOGS.missing_fields(data):
            return StorageResult(None, "Missing required fields: level, category, message")

        params = SYSTEM_LOGS.insert_params(data)
        if not params.get("resource_name"):
            params["resource_name"] = DEFAULT_RESOURCE_NAME

        result = await self.create(SYSTEM_LOGS.insert_query(), params)
        if result.error:
            logger.error(
                "Failed to create system log",
                extra={"storage": self.name, "error": result.error},
            )
        return result

    async def get_log(self, log_id: int, force_db: bool = False) -> StorageResult:
        return await self.get(
            log_id,
            "SELECT * FROM logs.system WHERE id = :id",
            {"id": log_id},
            force_db=force_db,
        )

    async def _listing(self, column: str, key_name: str, value: Any, limit: int, offset: int) -> StorageResult:
        value = _value(value)
        return await self.custom_query(
            f"{self.config.cache_prefix}:{key_name}:{value}:{int(limit)}:{int(offset)}",
            f"""
            SELECT * FROM logs.system
            WHERE {column} = :value
            ORDER BY created_at DESC
            LIMIT :limit OFFSET :offset
            """,
            {"value": value, "limit": int(limit), "offset": int(offset)},
            ttl=LIST_TTL_SECONDS,
        )

    async def get_logs_by_level(
        self, level: Union[str, LogLevel], limit: int = 100, offset: int = 0
    ) -> StorageResult:
        return await self._listing("level", "level", level, limit, offset)

    async def get_logs_by_category(self, category: str, limit: int = 100, offset: int = 0) -> StorageResult:
        return await self._listing("category", "category", category, limit, offset)

    async def get_logs_by_resource(self, resource_name: str, limit: int = 100, offset: int = 0) -> StorageResult:
        return await self._listing("resource_name", "resource", resource_name, limit, offset)

    async def search_logs(self, term: str, limit: int = 50) -> StorageResult:
        """Case-insensitive substring search on the message. Never cached."""
        return await self.custom_query(
            None,
            """
            SELECT * FROM logs.system
            WHERE message ILIKE :search
            ORDER BY created_at DESC
            LIMIT :limit
            """,
            {"search": f"%{term}%", "limit": int(limit)},
            skip_cache=True,
        )

    async def get_recent_logs(self, limit: int = 100) -> StorageResult:
        return await self.custom_query(
            f"{self.config.cache_prefix}:recent:{int(limit)}",
            "SELECT * FROM logs.system ORDER BY created_at DESC LIMIT :limit",
            {"limit": int(limit)},
            ttl=RECENT_TTL_SECONDS,
        )

    async def get_logs_by_time_range(
        self,
        start: datetime,
        end: datetime,
        limit: int = 100,
    ) -> StorageResult:
        return await self.custom_query(
            None,
            """
            SELECT * FROM logs.system
            WHERE created_at BETWEEN :start_time AND :end_time
            ORDER BY created_at DESC
            LIMIT :limit
            """,
            {"start_time": start, "end_time": end, "limit": int(limit)},
            skip_cache=True,
        )

    async def count_by_level(self, level: Union[str, LogLevel]) -> StorageResult:
        level = _value(level)
        row, error = await self.custom_query(
            f"{self.config.cache_prefix}:count:level:{level}",
            "SELECT COUNT(*) AS count FROM logs.system WHERE level = :level",
            {"level": level},
            ttl=COUNT_TTL_SECONDS,
            single=True,
        )
        if error:
            return StorageResult(None, error)
        return StorageResult(int(row["count"]) if row else 0, None)

    async def delete_old_logs(self, days: int = 30) -> StorageResult:
        """Delete entries older than ``days`` days and clear this storage's cache."""
        deleted, error = await self.database.execute(
            "DELETE FROM logs.system WHERE created_at < NOW() - make_interval(days => :days)",
            {"days": int(days)},
        )
        if error:
            logger.error(
                "Failed to delete old system logs",
                extra={"storage": self.name, "error": error},
            )
            return StorageResult(None, error)

        await self.invalidate_all()
        logger.info(
            "Deleted %d old system logs (older than %d days)",
            deleted,
            days,
            extra={"storage": self.name},
        )
        return StorageResult(deleted, None)

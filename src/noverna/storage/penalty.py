"""
Penalty Storage

Bans issued against user accounts (table ``bans``). Only the currently
active penalty of a user is cached, since it is read on every connection
attempt; the full history is always read from the database.

A penalty is active when it has not been pardoned and either never expires
(``expires_at`` is NULL) or expires in the future.

Cache keys
----------
- ``storage:penalty:<user_id>:active``

Write paths and the keys they invalidate
----------------------------------------
- add_penalty / pardon_penalty: ``<user_id>:active``
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Mapping, Optional, Union

from noverna.core.logging.logger import get_logger
from noverna.storage.base import BaseStorage, StorageConfig, StorageResult

if TYPE_CHECKING:
    from noverna.core.cache.service import CacheService
    from noverna.core.database.service import DatabaseService

logger = get_logger(__name__)

ACTIVE_SUFFIX = "active"
DEFAULT_BANNED_BY = "System"
DEFAULT_PENALTY_DURATION = timedelta(days=30)

_ACTIVE_CONDITION = "pardoned = FALSE AND (expires_at IS NULL OR expires_at > NOW())"


def naive_utc(value: Union[datetime, str]) -> datetime:
    """
    Convert to the naive UTC form ``TIMESTAMP`` columns store.

    ISO strings are parsed first; aware values are shifted to UTC and lose
    their zone; naive values are taken as UTC already.
    """
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def default_expiry(now: Optional[datetime] = None) -> datetime:
    """Naive UTC timestamp 30 days from ``now``."""
    return naive_utc(now or datetime.now(timezone.utc)) + DEFAULT_PENALTY_DURATION


class PenaltyStorage(BaseStorage):
    """Storage for the ``bans`` table."""

    def __init__(self, database: DatabaseService, cache: CacheService) -> None:
        super().__init__(
            StorageConfig(name="penalty", cache_prefix="storage:penalty", default_ttl=600),
            database,
            cache,
        )

    async def get_active_penalty_by_user_id(self, user_id: Optional[int]) -> StorageResult:
        if not user_id:
            logger.error("user_id is required", extra={"storage": self.name})
            return StorageResult(None, "user_id is required")

        return await self.get(
            user_id,
            f"""
            SELECT * FROM bans
            WHERE user_id = :user_id
              AND {_ACTIVE_CONDITION}
            ORDER BY banned_at DESC
            LIMIT 1
            """,
            {"user_id": user_id},
            suffix=ACTIVE_SUFFIX,
        )

    async def get_penalties_by_user_id(self, user_id: int) -> StorageResult:
        return await self.custom_query(
            None,
            "SELECT * FROM bans WHERE user_id = :user_id ORDER BY banned_at DESC",
            {"user_id": user_id},
        )

    async def add_penalty(self, data: Mapping[str, Any]) -> StorageResult:
        """
        Ban a user.

        Args:
            data: ``user_id`` and ``reason`` (required), optional
                ``banned_by`` (default ``"System"``) and ``expires_at``
                (default 30 days from now)

        Returns:
            StorageResult with the new penalty id
        """
        if not data.get("user_id") or not data.get("reason"):
            return StorageResult(None, "Invalid penalty data: user_id and reason are required")

        try:
            expires_at = naive_utc(data["expires_at"]) if data.get("expires_at") else default_expiry()
        except ValueError:
            return StorageResult(None, "Invalid expires_at, expected an ISO 8601 timestamp")

        params = {
            "user_id": data["user_id"],
            "reason": data["reason"],
            "banned_by": data.get("banned_by") or DEFAULT_BANNED_BY,
            "expires_at": expires_at,
        }

        result = await self.create(
            """
            INSERT INTO bans (user_id, reason, banned_by, expires_at, created_at, updated_at)
            VALUES (:user_id, :reason, :banned_by, :expires_at, NOW(), NOW())
            RETURNING id
            """,
            params,
        )
        if result.error:
            logger.error(
                "Failed to add penalty",
                extra={"storage": self.name, "user_id": data["user_id"], "error": result.error},
            )
            return result

        await self.invalidate_cache(data["user_id"], ACTIVE_SUFFIX)
        logger.info(
            "Penalty added",
            extra={
                "storage": self.name,
                "user_id": data["user_id"],
                "penalty_id": result.data,
                "banned_by": params["banned_by"],
            },
        )
        return result

    async def pardon_penalty(
        self,
        user_id: int,
        reason: str,
        pardoned_by: str,
    ) -> StorageResult:
        """Pardon every active penalty of a user. Returns True on success."""
        result = await self.update(
            user_id,
            f"""
            UPDATE bans
            SET pardoned = TRUE,
                pardon_reason = :pardon_reason,
                pardoned_by = :pardoned_by,
                pardoned_at = NOW(),
                updated_at = NOW()
            WHERE user_id = :user_id
              AND {_ACTIVE_CONDITION}
            """,
            {"user_id": user_id, "pardon_reason": reason, "pardoned_by": pardoned_by},
            invalidate_only=True,
            suffix=ACTIVE_SUFFIX,
        )
        if result.error:
            logger.error(
                "Failed to pardon penalty",
                extra={"storage": self.name, "user_id": user_id, "error": result.error},
            )
            return StorageResult(False, result.error)

        if not result.data:
            return StorageResult(False, "No active penalty found to pardon")

        return StorageResult(True, None)

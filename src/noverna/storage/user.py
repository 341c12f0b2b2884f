"""
User Storage

Player accounts keyed by their platform license. The license is the cache
identifier for every cached user entry.

Cache keys
----------
- ``storage:user:<license>``: the user row
- ``storage:user:<username>:username``: lookup by username
- ``storage:user:all:<limit>:<offset>``: paginated listing (5 minutes)

Write paths and the keys they invalidate
----------------------------------------
- create_user: seeds ``<license>``
- update_last_connection: ``<license>`` and ``<username>:username``
- update_user: ``<license>``, ``<old>:username`` and ``<new>:username``
- delete_user: ``<license>``, ``<username>:username`` and the cascaded
  characters in the character cache (rows, full views, the user's list)

Every successful write also drops the paginated listings
(``all:*``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, Mapping

from noverna.core.logging.logger import get_logger
from noverna.storage.base import BaseStorage, StorageConfig, StorageResult, build_assignments
from noverna.storage.character import CHARACTER_CACHE_PREFIX, FULL_SUFFIX, USER_LIST_SUFFIX

if TYPE_CHECKING:
    from noverna.core.cache.service import CacheService
    from noverna.core.database.service import DatabaseService

logger = get_logger(__name__)

USER_REQUIRED_FIELDS = ("username", "license", "identifier")
USER_IMMUTABLE_FIELDS = ("id", "license", "created_at")
LIST_KEY = "all"
LIST_TTL_SECONDS = 300
USERNAME_SUFFIX = "username"


class UserStorage(BaseStorage):
    """Storage for the ``users`` table."""

    def __init__(self, database: DatabaseService, cache: CacheService) -> None:
        super().__init__(
            StorageConfig(name="user", cache_prefix="storage:user", default_ttl=3600),
            database,
            cache,
        )

    def extract_identifier(self, row: Mapping[str, Any]) -> Any:
        return row.get("license")

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_by_license(self, license: str, force_db: bool = False) -> StorageResult:
        return await self.get(
            license,
            "SELECT * FROM users WHERE license = :license",
            {"license": license},
            force_db=force_db,
        )

    async def get_by_identifier(self, identifier: str) -> StorageResult:
        return await self.custom_query(
            None,
            "SELECT * FROM users WHERE identifier = :identifier",
            {"identifier": identifier},
            single=True,
        )

    async def get_by_id(self, user_id: int) -> StorageResult:
        return await self.custom_query(
            None,
            "SELECT * FROM users WHERE id = :id",
            {"id": user_id},
            single=True,
        )

    async def get_by_username(self, username: str, force_db: bool = False) -> StorageResult:
        return await self.get(
            username,
            "SELECT * FROM users WHERE username = :username",
            {"username": username},
            suffix=USERNAME_SUFFIX,
            force_db=force_db,
        )

    async def exists(self, license: str) -> StorageResult:
        user, error = await self.get_by_license(license)
        if error:
            return StorageResult(False, error)
        return StorageResult(user is not None, None)

    async def get_all(self, limit: int = 50, offset: int = 0) -> StorageResult:
        return await self.custom_query(
            f"{self.config.cache_prefix}:{LIST_KEY}:{int(limit)}:{int(offset)}",
            """
            SELECT * FROM users
            ORDER BY created_at DESC
            LIMIT :limit OFFSET :offset
            """,
            {"limit": int(limit), "offset": int(offset)},
            ttl=LIST_TTL_SECONDS,
        )

    # ========================================================================
    # Writes
    # ========================================================================

    async def create_user(self, data: Mapping[str, Any]) -> StorageResult:
        """
        Insert a user and seed the cache at its license.

        Args:
            data: ``username``, ``license`` and ``identifier`` (all required)

        Returns:
            StorageResult with the new user id
        """
        if any(not data.get(field_name) for field_name in USER_REQUIRED_FIELDS):
            return StorageResult(None, "Missing required fields: username, license, identifier")

        params = {
            "username": data["username"],
            "license": data["license"],
            "identifier": data["identifier"],
        }

        result = await self.create(
            """
            INSERT INTO users (username, license, identifier, last_connection)
            VALUES (:username, :license, :identifier, NOW())
            RETURNING id
            """,
            params,
            cache_data=params,
            identifier=data["license"],
        )

        if result.error:
            logger.error(
                "Failed to create user",
                extra={"storage": self.name, "license": data["license"], "error": result.error},
            )
        else:
            await self._invalidate_listings()
            logger.info(
                "User created",
                extra={"storage": self.name, "license": data["license"], "user_id": result.data},
            )
        return result

    async def _invalidate_usernames(self, *usernames: Any) -> None:
        for username in {name for name in usernames if name}:
            await self.invalidate_cache(username, USERNAME_SUFFIX)
        await self._invalidate_listings()

    async def _invalidate_listings(self) -> int:
        if not self.config.enable_cache:
            return 0
        return await self.cache.delete_pattern(f"{self.config.cache_prefix}:{LIST_KEY}:*")

    async def update_last_connection(self, license: str) -> StorageResult:
        rows, error = await self.write_returning(
            license,
            """
            UPDATE users
            SET last_connection = NOW(), updated_at = NOW()
            WHERE license = :license
            RETURNING username
            """,
            {"license": license},
        )
        if error:
            return StorageResult(None, error)

        await self._invalidate_usernames(*(row["username"] for row in rows))
        return StorageResult(len(rows), None)

    async def update_user(self, license: str, data: Mapping[str, Any]) -> StorageResult:
        """
        Update arbitrary columns except ``id``, ``license`` and ``created_at``.

        The username entry is dropped under both the previous and the
        current name, so a rename never leaves the old lookup cached.
        """
        try:
            assignments, params = build_assignments(data, USER_IMMUTABLE_FIELDS)
        except ValueError as exc:
            return StorageResult(0, str(exc))

        if not assignments:
            return StorageResult(0, "No fields to update")

        assignments.append("updated_at = NOW()")
        params["license"] = license

        rows, error = await self.write_returning(
            license,
            f"""
            UPDATE users AS u SET {', '.join(assignments)}
            FROM (SELECT id, username FROM users WHERE license = :license FOR UPDATE) AS previous
            WHERE u.id = previous.id
            RETURNING previous.username AS previous_username, u.username
            """,
            params,
        )
        if error:
            return StorageResult(None, error)

        for row in rows:
            await self._invalidate_usernames(row["previous_username"], row["username"])
        return StorageResult(len(rows), None)

    async def delete_user(self, license: str) -> StorageResult:
        """
        Delete a user by license.

        Characters go with the user (``ON DELETE CASCADE``), so their row,
        full view and the user's character list are dropped from the
        character cache as well.
        """
        rows, error = await self.write_returning(
            license,
            """
            DELETE FROM users
            WHERE license = :license
            RETURNING
                id,
                username,
                ARRAY(SELECT c.id FROM characters c WHERE c.user_id = users.id) AS character_ids
            """,
            {"license": license},
        )
        if error:
            await self.invalidate_cache(license)
            return StorageResult(None, error)

        for row in rows:
            await self._invalidate_usernames(row["username"])
            await self._invalidate_characters(row["id"], row.get("character_ids") or [])
        return StorageResult(len(rows), None)

    async def _invalidate_characters(self, user_id: Any, character_ids: List[Any]) -> None:
        if not self.config.enable_cache:
            return
        keys = [f"{CHARACTER_CACHE_PREFIX}:{user_id}:{USER_LIST_SUFFIX}"]
        for character_id in character_ids:
            keys.append(f"{CHARACTER_CACHE_PREFIX}:{character_id}")
            keys.append(f"{CHARACTER_CACHE_PREFIX}:{character_id}:{FULL_SUFFIX}")
        await self.cache.delete_many(keys)

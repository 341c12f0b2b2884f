"""
Character Storage

Playable characters owned by a user. Characters are cached by their numeric
id; the joined "full" view (accounts, position, metadata, appearance) and the
per-user character list are cached as separate views.

Cache keys
----------
- ``storage:character:<id>``: the character row
- ``storage:character:<id>:full``: row joined with its relations
- ``storage:character:<user_id>:user``: all characters of a user

Write paths and the keys they invalidate
----------------------------------------
- create_character: ``<user_id>:user``
- update_character / update_job / update_gang / set_dead /
  update_last_played: ``<id>``, ``<id>:full`` and the owner's
  ``<user_id>:user`` (the owner comes back from ``RETURNING user_id``)
- delete_character: ``<id>``, ``<id>:full`` and ``<user_id>:user``
"""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, Any, Mapping, Optional

from noverna.core.logging.logger import get_logger
from noverna.storage.base import BaseStorage, StorageConfig, StorageResult, build_assignments

if TYPE_CHECKING:
    from noverna.core.cache.service import CacheService
    from noverna.core.database.service import DatabaseService

logger = get_logger(__name__)

CHARACTER_REQUIRED_FIELDS = ("user_id", "first_name", "last_name", "date_of_birth", "sex")
CHARACTER_IMMUTABLE_FIELDS = ("id", "user_id", "created_at")

CHARACTER_CACHE_PREFIX = "storage:character"
FULL_SUFFIX = "full"
USER_LIST_SUFFIX = "user"

_SELECT_FULL = """
    SELECT
        c.*,
        json_agg(DISTINCT jsonb_build_object(
            'account_type', ca.account_type,
            'balance', ca.balance
        )) FILTER (WHERE ca.id IS NOT NULL) AS accounts,
        cp.position,
        cm.metadata,
        capp.appearance
    FROM characters c
    LEFT JOIN character_accounts ca ON c.id = ca.character_id
    LEFT JOIN character_positions cp ON c.id = cp.character_id
    LEFT JOIN character_metadata cm ON c.id = cm.character_id
    LEFT JOIN character_appearances capp ON c.id = capp.character_id
    WHERE c.id = :id
    GROUP BY c.id, cp.position, cm.metadata, capp.appearance
"""


def _as_date(value: Any) -> Any:
    # asyncpg binds DATE parameters from date objects only
    if isinstance(value, str):
        return date.fromisoformat(value)
    return value


class CharacterStorage(BaseStorage):
    """Storage for the ``characters`` table and its per-character relations."""

    def __init__(self, database: DatabaseService, cache: CacheService) -> None:
        super().__init__(
            StorageConfig(name="character", cache_prefix=CHARACTER_CACHE_PREFIX, default_ttl=3600),
            database,
            cache,
        )

    def extract_identifier(self, row: Mapping[str, Any]) -> Any:
        return row.get("id")

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_by_id(
        self,
        character_id: int,
        force_db: bool = False,
        include_relations: bool = False,
    ) -> StorageResult:
        """
        Load a character, optionally joined with accounts, position, metadata
        and appearance. The joined view is cached under the ``full`` suffix.
        """
        if include_relations:
            return await self.get(
                character_id,
                _SELECT_FULL,
                {"id": character_id},
                suffix=FULL_SUFFIX,
                force_db=force_db,
            )
        return await self.get(
            character_id,
            "SELECT * FROM characters WHERE id = :id",
            {"id": character_id},
            force_db=force_db,
        )

    async def get_by_user_id(self, user_id: int, force_db: bool = False) -> StorageResult:
        return await self.custom_query(
            self.cache_key(user_id, USER_LIST_SUFFIX),
            """
            SELECT * FROM characters
            WHERE user_id = :user_id
            ORDER BY last_played DESC NULLS LAST
            """,
            {"user_id": user_id},
            skip_cache=force_db,
        )

    async def get_by_name(self, first_name: str, last_name: str) -> StorageResult:
        return await self.custom_query(
            None,
            """
            SELECT * FROM characters
            WHERE first_name = :first_name AND last_name = :last_name
            """,
            {"first_name": first_name, "last_name": last_name},
            single=True,
        )

    # ========================================================================
    # Writes
    # ========================================================================

    async def create_character(self, data: Mapping[str, Any]) -> StorageResult:
        """
        Insert a character for an existing user.

        Args:
            data: Character columns. ``user_id``, ``first_name``,
                ``last_name``, ``date_of_birth`` and ``sex`` are required.

        Returns:
            StorageResult with the new character id
        """
        missing = [field_name for field_name in CHARACTER_REQUIRED_FIELDS if not data.get(field_name)]
        if missing:
            return StorageResult(None, f"Missing required fields: {', '.join(missing)}")

        try:
            date_of_birth = _as_date(data["date_of_birth"])
        except ValueError:
            return StorageResult(None, "Invalid date_of_birth, expected YYYY-MM-DD")

        params = {
            "user_id": data["user_id"],
            "first_name": data["first_name"],
            "last_name": data["last_name"],
            "date_of_birth": date_of_birth,
            "sex": data["sex"],
            "height": data.get("height") or 180,
            "job": data.get("job") or "unemployed",
            "job_grade": data.get("job_grade") or 0,
            "job_label": data.get("job_label"),
            "gang": data.get("gang") or "none",
            "gang_grade": data.get("gang_grade") or 0,
            "gang_label": data.get("gang_label"),
        }

        result = await self.create(
            """
            INSERT INTO characters (
                user_id, first_name, last_name, date_of_birth, sex, height,
                job, job_grade, job_label, gang, gang_grade, gang_label
            ) VALUES (
                :user_id, :first_name, :last_name, :date_of_birth, :sex, :height,
                :job, :job_grade, :job_label, :gang, :gang_grade, :gang_label
            ) RETURNING id
            """,
            params,
        )
        if result.error:
            logger.error(
                "Failed to create character",
                extra={"storage": self.name, "user_id": data["user_id"], "error": result.error},
            )
            return result

        await self.invalidate_cache(data["user_id"], USER_LIST_SUFFIX)
        return result

    async def _update_columns(
        self,
        character_id: Any,
        assignments: str,
        params: Mapping[str, Any],
    ) -> StorageResult:
        rows, error = await self.write_returning(
            character_id,
            f"UPDATE characters SET {assignments}, updated_at = NOW() WHERE id = :id RETURNING user_id",
            {**params, "id": character_id},
        )
        if error:
            return StorageResult(None, error)

        await self.invalidate_cache(character_id, FULL_SUFFIX)
        for owner_id in {row["user_id"] for row in rows}:
            await self.invalidate_cache(owner_id, USER_LIST_SUFFIX)
        return StorageResult(len(rows), None)

    async def update_character(self, character_id: int, data: Mapping[str, Any]) -> StorageResult:
        try:
            assignments, params = build_assignments(data, CHARACTER_IMMUTABLE_FIELDS)
        except ValueError as exc:
            return StorageResult(0, str(exc))

        if not assignments:
            return StorageResult(0, "No fields to update")

        if "date_of_birth" in params:
            try:
                params["date_of_birth"] = _as_date(params["date_of_birth"])
            except ValueError:
                return StorageResult(0, "Invalid date_of_birth, expected YYYY-MM-DD")

        return await self._update_columns(character_id, ", ".join(assignments), params)

    async def update_job(
        self,
        character_id: int,
        job: str,
        grade: int = 0,
        label: Optional[str] = None,
    ) -> StorageResult:
        return await self._update_columns(
            character_id,
            "job = :job, job_grade = :grade, job_label = :label",
            {"job": job, "grade": grade, "label": label},
        )

    async def update_gang(
        self,
        character_id: int,
        gang: str,
        grade: int = 0,
        label: Optional[str] = None,
    ) -> StorageResult:
        return await self._update_columns(
            character_id,
            "gang = :gang, gang_grade = :grade, gang_label = :label",
            {"gang": gang, "grade": grade, "label": label},
        )

    async def set_dead(self, character_id: int, is_dead: bool) -> StorageResult:
        return await self._update_columns(
            character_id,
            "is_dead = :is_dead",
            {"is_dead": bool(is_dead)},
        )

    async def update_last_played(self, character_id: int) -> StorageResult:
        return await self._update_columns(character_id, "last_played = NOW()", {})

    async def delete_character(self, character_id: int) -> StorageResult:
        """Delete a character and drop its row, full view and owner's list."""
        character, _ = await self.get_by_id(character_id)

        result = await self.delete(
            character_id,
            "DELETE FROM characters WHERE id = :id",
            {"id": character_id},
        )

        await self.invalidate_cache(character_id, FULL_SUFFIX)
        if character and character.get("user_id") is not None:
            await self.invalidate_cache(character["user_id"], USER_LIST_SUFFIX)

        return result

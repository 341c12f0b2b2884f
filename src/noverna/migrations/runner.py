"""
Migration Runner - Schema Management (Noverna)

Purpose
-------
Forward-only schema migrations for the core database. Discovers versioned
SQL files, executes the pending ones in numeric order and records every
attempt in ``migration_history``.

Responsibilities
----------------
- Create the history table idempotently
- Skip versions that already succeeded, as long as their file is unchanged
- Abort with a checksum-mismatch signal when an applied file was edited
- Execute each pending file as one raw batch, timed
- Stop at the first failing migration (later files are not attempted)
- Report status per file and scaffold new migration files
- Development-only database renew (drop everything, migrate again)

Non-Responsibilities
--------------------
- Down migrations / rollbacks
- Deciding when migrations run (ApplicationContext and the CLI do)

Architecture Notes
------------------
**History rows**:
- One row per version (``version`` is unique). A failed attempt writes a
  row with ``success = FALSE``; a later attempt of the same version
  replaces that row. Successful rows are never overwritten.

**Checksums**:
- SHA-256 of the file bytes. A change detector, not a security control.

**Failure semantics**:
- The runner returns ``MigrationRunResult`` and never raises for database
  or SQL failures. Only ``renew_database`` raises, when its gate is closed.

Configuration
-------------
- MIGRATIONS_DIR (default: <project>/data/migrations)
- DATABASE_READY_TIMEOUT_SECONDS (default: 15)
- DATABASE_COMMANDS_ENABLED + ENVIRONMENT=development (renew gate)

Usage Example
-------------
>>> runner = MigrationRunner(database)
>>> result = await runner.run_pending_migrations()
>>> if not result.success:
...     logger.critical("Migrations failed at %s", result.failed_version)
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Union

from noverna.core.config.config import Config
from noverna.core.exceptions import RenewNotAllowedError
from noverna.core.logging.logger import get_logger
from noverna.migrations.files import (
    MigrationFile,
    compute_checksum,
    discover_migrations,
    find_duplicate_versions,
)

if TYPE_CHECKING:
    from noverna.core.database.service import DatabaseService

logger = get_logger(__name__)

MIGRATION_TABLE = "migration_history"
MANAGED_SCHEMAS: Sequence[str] = ("public", "logs")
ERROR_MESSAGE_MAX_LENGTH = 2000


# ============================================================================
# SQL
# ============================================================================

CREATE_HISTORY_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS migration_history (
    id SERIAL PRIMARY KEY,
    version VARCHAR(50) NOT NULL,
    name VARCHAR(255) NOT NULL,
    checksum VARCHAR(64),
    executed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    execution_time_ms INTEGER,
    success BOOLEAN DEFAULT TRUE,
    error_message TEXT,
    CONSTRAINT unique_migration_version UNIQUE (version)
);
CREATE INDEX IF NOT EXISTS idx_migration_history_version ON migration_history(version);
CREATE INDEX IF NOT EXISTS idx_migration_history_executed_at ON migration_history(executed_at);
"""

SELECT_HISTORY_SQL = """
SELECT version, name, checksum, executed_at, execution_time_ms, success, error_message
FROM migration_history
WHERE version = :version
"""

RECORD_ATTEMPT_SQL = """
INSERT INTO migration_history (version, name, checksum, execution_time_ms, success, error_message)
VALUES (:version, :name, :checksum, :execution_time_ms, :success, :error_message)
ON CONFLICT (version) DO UPDATE SET
    name = EXCLUDED.name,
    checksum = EXCLUDED.checksum,
    executed_at = CURRENT_TIMESTAMP,
    execution_time_ms = EXCLUDED.execution_time_ms,
    success = EXCLUDED.success,
    error_message = EXCLUDED.error_message
WHERE migration_history.success = FALSE
"""

LIST_TABLES_SQL = """
SELECT schemaname AS schema_name, tablename AS object_name
FROM pg_tables
WHERE schemaname = ANY(:schemas)
ORDER BY schemaname, tablename
"""

LIST_VIEWS_SQL = """
SELECT table_schema AS schema_name, table_name AS object_name
FROM information_schema.views
WHERE table_schema = ANY(:schemas)
"""

LIST_FUNCTIONS_SQL = """
SELECT n.nspname AS schema_name,
       p.proname AS object_name,
       pg_get_function_identity_arguments(p.oid) AS arguments
FROM pg_proc p
JOIN pg_namespace n ON n.oid = p.pronamespace
WHERE n.nspname = ANY(:schemas)
  AND p.prokind = 'f'
  AND NOT EXISTS (
      SELECT 1 FROM pg_depend d WHERE d.objid = p.oid AND d.deptype = 'e'
  )
"""

LIST_ENUM_TYPES_SQL = """
SELECT n.nspname AS schema_name, t.typname AS object_name
FROM pg_type t
JOIN pg_namespace n ON n.oid = t.typnamespace
WHERE t.typtype = 'e'
  AND n.nspname = ANY(:schemas)
"""

MIGRATION_TEMPLATE = """-- Migration {version}: {name}
-- Created: {created_at}
--
-- Forward-only. The whole file runs as one batch; a failing statement
-- aborts the batch and the migration is recorded as failed.

"""


def _quote_ident(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _qualified(row: Dict[str, Any]) -> str:
    return f"{_quote_ident(row['schema_name'])}.{_quote_ident(row['object_name'])}"


def sanitize_migration_name(name: str) -> str:
    """Lowercase ``name`` and collapse anything but ``[a-z0-9]`` to underscores."""
    cleaned = re.sub(r"[^a-z0-9]+", "_", name.strip().lower()).strip("_")
    if not cleaned:
        raise ValueError(f"Invalid migration name: {name!r}")
    return cleaned


# ============================================================================
# Results
# ============================================================================


@dataclass(frozen=True)
class MigrationRunResult:
    """
    Outcome of a migration run.

    Attributes
    ----------
    success : bool
        True when every pending migration was applied.
    executed : int
        Migrations applied during this run.
    failed_version : Optional[str]
        Version that stopped the run, if any.
    checksum_mismatch : bool
        True when the run stopped because an applied file was edited.
    error : Optional[str]
        Error text of the step that failed.
    """

    success: bool
    executed: int = 0
    failed_version: Optional[str] = None
    checksum_mismatch: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class MigrationStatus:
    version: str
    name: str
    applied: bool
    success: bool
    executed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    checksum_matches: Optional[bool] = None


# ============================================================================
# MigrationRunner
# ============================================================================


class MigrationRunner:
    """
    Executes versioned SQL migrations against a DatabaseService.

    Public API
    ----------
    - run_pending_migrations() -> MigrationRunResult
    - get_status() -> list of MigrationStatus
    - create_migration(name) -> Path of the new file
    - renew_database() -> MigrationRunResult (development only)
    - is_applied(version) / validate_checksum(migration) /
      execute_migration(migration)
    """

    def __init__(
        self,
        database: DatabaseService,
        migrations_dir: Union[str, Path, None] = None,
        *,
        ready_timeout: Optional[float] = None,
    ) -> None:
        self.database = database
        self.migrations_dir = Path(migrations_dir) if migrations_dir is not None else Config.MIGRATIONS_DIR
        self.ready_timeout = (
            ready_timeout if ready_timeout is not None else Config.DATABASE_READY_TIMEOUT_SECONDS
        )

    def discover(self) -> List[MigrationFile]:
        return discover_migrations(self.migrations_dir)

    # ========================================================================
    # History
    # ========================================================================

    async def ensure_history_table(self) -> bool:
        ok, error = await self.database.raw_query(CREATE_HISTORY_TABLE_SQL)
        if error:
            logger.error(
                "Failed to create migration history table",
                extra={"error": error},
            )
            return False
        return bool(ok)

    async def _history_row(self, version: str):
        return await self.database.single(SELECT_HISTORY_SQL, {"version": version})

    async def is_applied(self, version: str) -> bool:
        row, error = await self._history_row(version)
        if error:
            logger.error(
                "Error checking migration status",
                extra={"migration_version": version, "error": error},
            )
            return False
        return bool(row and row.get("success"))

    async def validate_checksum(self, migration: MigrationFile) -> bool:
        """False when the file differs from what was recorded at its successful run."""
        row, error = await self._history_row(migration.version)
        if error or not row or not row.get("success"):
            return True

        try:
            current = migration.checksum()
        except OSError as exc:
            logger.error(
                "Failed to read migration file",
                extra={"migration_file": migration.filename, "error": str(exc)},
            )
            return False

        if row.get("checksum") and row["checksum"] != current:
            logger.warning(
                "WARNING: Migration %s has been modified after execution!",
                migration.version,
                extra={
                    "migration_version": migration.version,
                    "recorded_checksum": row["checksum"],
                    "current_checksum": current,
                },
            )
            return False
        return True

    async def _record_attempt(
        self,
        migration: MigrationFile,
        checksum: str,
        execution_time_ms: int,
        success: bool,
        error_message: Optional[str],
    ) -> None:
        _, error = await self.database.execute(
            RECORD_ATTEMPT_SQL,
            {
                "version": migration.version,
                "name": migration.name,
                "checksum": checksum,
                "execution_time_ms": execution_time_ms,
                "success": success,
                "error_message": error_message[:ERROR_MESSAGE_MAX_LENGTH] if error_message else None,
            },
        )
        if error:
            logger.warning(
                "Failed to save migration history",
                extra={"migration_version": migration.version, "error": error},
            )

    # ========================================================================
    # Execution
    # ========================================================================

    async def execute_migration(self, migration: MigrationFile) -> bool:
        """Run one migration file and record the attempt."""
        logger.info(
            "Executing migration %s: %s",
            migration.version,
            migration.name,
            extra={"migration_version": migration.version},
        )

        try:
            raw = migration.read_bytes()
            content = raw.decode("utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.error(
                "Failed to read migration file",
                extra={"migration_file": migration.filename, "error": str(exc)},
            )
            return False

        checksum = compute_checksum(raw)
        start = time.perf_counter()
        ok, error = await self.database.raw_query(content)
        execution_time_ms = int((time.perf_counter() - start) * 1000)

        success = bool(ok) and error is None
        await self._record_attempt(migration, checksum, execution_time_ms, success, error)

        if success:
            logger.info(
                "Successfully executed migration %s in %dms",
                migration.version,
                execution_time_ms,
                extra={"migration_version": migration.version, "execution_time_ms": execution_time_ms},
            )
        else:
            logger.error(
                "Failed to execute migration %s",
                migration.version,
                extra={"migration_version": migration.version, "error": error},
            )
        return success

    def _check_unique_versions(self, migrations: List[MigrationFile]) -> Optional[MigrationRunResult]:
        duplicates = find_duplicate_versions(migrations)
        if not duplicates:
            return None

        listing = "; ".join(f"{version}: {', '.join(files)}" for version, files in sorted(duplicates.items()))
        logger.error(
            "Aborting migrations: duplicate migration versions",
            extra={"duplicates": duplicates},
        )
        return MigrationRunResult(
            success=False,
            failed_version=min(duplicates),
            error=f"Duplicate migration version {listing}",
        )

    async def run_pending_migrations(self) -> MigrationRunResult:
        """
        Apply every pending migration in ascending version order.

        Waits up to ``ready_timeout`` seconds for the database first. Two
        files claiming the same version abort the run before anything
        executes. Stops at the first failure or checksum mismatch.
        """
        logger.info("Starting migration process...")

        if not await self.database.await_ready(self.ready_timeout):
            logger.error(
                "Database connection timeout",
                extra={"timeout_seconds": self.ready_timeout},
            )
            return MigrationRunResult(success=False, error="Database connection timeout")

        if not await self.ensure_history_table():
            return MigrationRunResult(success=False, error="Failed to create migration history table")

        migrations = self.discover()
        duplicate_result = self._check_unique_versions(migrations)
        if duplicate_result is not None:
            return duplicate_result

        executed = 0

        for migration in migrations:
            row, error = await self._history_row(migration.version)
            if error:
                logger.error(
                    "Error checking migration status",
                    extra={"migration_version": migration.version, "error": error},
                )
                return MigrationRunResult(
                    success=False,
                    executed=executed,
                    failed_version=migration.version,
                    error=error,
                )

            if row and row.get("success"):
                if not await self.validate_checksum(migration):
                    logger.warning(
                        "Aborting migrations: applied migration %s was modified",
                        migration.version,
                        extra={"migration_version": migration.version},
                    )
                    return MigrationRunResult(
                        success=False,
                        executed=executed,
                        failed_version=migration.version,
                        checksum_mismatch=True,
                        error="Checksum mismatch",
                    )
                logger.debug(
                    "Skipping already executed migration %s: %s",
                    migration.version,
                    migration.name,
                )
                continue

            if not await self.execute_migration(migration):
                logger.error(
                    "Migration %s failed. Stopping migration process.",
                    migration.version,
                    extra={"executed": executed},
                )
                return MigrationRunResult(
                    success=False,
                    executed=executed,
                    failed_version=migration.version,
                    error=f"Migration {migration.version} failed",
                )
            executed += 1

        logger.info(
            "Migration process completed. Executed: %d, Failed: 0",
            executed,
            extra={"executed": executed, "discovered": len(migrations)},
        )
        return MigrationRunResult(success=True, executed=executed)

    # ========================================================================
    # Status & scaffolding
    # ========================================================================

    async def get_status(self) -> List[MigrationStatus]:
        statuses: List[MigrationStatus] = []
        for migration in self.discover():
            row, error = await self._history_row(migration.version)
            if error:
                logger.warning(
                    "Could not read migration history",
                    extra={"migration_version": migration.version, "error": error},
                )
                row = None

            checksum_matches: Optional[bool] = None
            if row and row.get("checksum"):
                try:
                    checksum_matches = row["checksum"] == migration.checksum()
                except OSError:
                    checksum_matches = False

            statuses.append(
                MigrationStatus(
                    version=migration.version,
                    name=migration.name,
                    applied=row is not None,
                    success=bool(row and row.get("success")),
                    executed_at=row.get("executed_at") if row else None,
                    error_message=row.get("error_message") if row else None,
                    checksum_matches=checksum_matches,
                )
            )
        return statuses

    def create_migration(self, name: str) -> Path:
        """Write an empty migration file with the next free version and return its path."""
        safe_name = sanitize_migration_name(name)
        existing = self.discover()
        last_version = max((migration.version_number for migration in existing), default=0)
        version = f"{last_version + 1:03d}"

        self.migrations_dir.mkdir(parents=True, exist_ok=True)
        path = self.migrations_dir / f"{version}_{safe_name}.sql"
        with path.open("x", encoding="utf-8") as handle:
            handle.write(
                MIGRATION_TEMPLATE.format(
                    version=version,
                    name=safe_name,
                    created_at=datetime.now().isoformat(timespec="seconds"),
                )
            )

        logger.info("Created new migration file: %s", path.name, extra={"path": str(path)})
        return path

    # ========================================================================
    # Renew (development only)
    # ========================================================================

    async def _drop_objects(self, list_sql: str, drop_template: str, label: str) -> Optional[str]:
        rows, error = await self.database.query(list_sql, {"schemas": list(MANAGED_SCHEMAS)})
        if error:
            return error
        if not rows:
            return None

        statements = [drop_template.format(target=_qualified(row), **row) for row in rows]
        _, error = await self.database.raw_query("\n".join(statements))
        if error:
            return error

        logger.warning("Dropped %d %s", len(rows), label, extra={"dropped": len(rows)})
        return None

    async def renew_database(self) -> MigrationRunResult:
        """
        Drop every table, view, function and enum type in the managed
        schemas, recreate the schemas and run all migrations again.

        Raises
        ------
        RenewNotAllowedError
            Unless DATABASE_COMMANDS_ENABLED is set in a development
            environment.
        """
        if not Config.destructive_commands_allowed():
            raise RenewNotAllowedError(Config.ENVIRONMENT, Config.DATABASE_COMMANDS_ENABLED)

        logger.warning("=" * 70)
        logger.warning("DATABASE RENEW: all data in schemas %s will be deleted", ", ".join(MANAGED_SCHEMAS))
        logger.warning("=" * 70)

        duplicate_result = self._check_unique_versions(self.discover())
        if duplicate_result is not None:
            return duplicate_result

        if not await self.database.await_ready(self.ready_timeout):
            return MigrationRunResult(success=False, error="Database connection timeout")

        logger.warning("Renew step 1/5: dropping tables")
        error = await self._drop_objects(LIST_TABLES_SQL, "DROP TABLE IF EXISTS {target} CASCADE;", "tables")
        if error:
            return MigrationRunResult(success=False, error=error)

        logger.warning("Renew step 2/5: dropping views, functions and enum types")
        for list_sql, template, label in (
            (LIST_VIEWS_SQL, "DROP VIEW IF EXISTS {target} CASCADE;", "views"),
            (LIST_FUNCTIONS_SQL, "DROP FUNCTION IF EXISTS {target}({arguments}) CASCADE;", "functions"),
            (LIST_ENUM_TYPES_SQL, "DROP TYPE IF EXISTS {target} CASCADE;", "enum types"),
        ):
            error = await self._drop_objects(list_sql, template, label)
            if error:
                return MigrationRunResult(success=False, error=error)

        logger.warning("Renew step 3/5: verifying that no tables remain")
        remaining, error = await self.database.query(LIST_TABLES_SQL, {"schemas": list(MANAGED_SCHEMAS)})
        if error:
            return MigrationRunResult(success=False, error=error)
        if remaining:
            survivors = ", ".join(_qualified(row) for row in remaining)
            logger.error("Tables survived the drop: %s", survivors)
            return MigrationRunResult(success=False, error=f"Tables remain after drop: {survivors}")

        logger.warning("Renew step 4/5: recreating schemas")
        _, error = await self.database.raw_query(
            "\n".join(f"CREATE SCHEMA IF NOT EXISTS {_quote_ident(schema)};" for schema in MANAGED_SCHEMAS)
        )
        if error:
            return MigrationRunResult(success=False, error=error)

        logger.warning("Renew step 5/5: running migrations")
        result = await self.run_pending_migrations()
        if result.success:
            logger.warning("Database renewed. Migrations executed: %d", result.executed)
        return result

"""
noverna-db: developer database commands.

    noverna-db migrate              Apply pending migrations
    noverna-db status               Show migration status per file
    noverna-db new NAME             Create the next migration file
    noverna-db renew --confirm      Drop everything and migrate again
                                    (development + DATABASE_COMMANDS_ENABLED only)
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from noverna.core.config.config import Config
from noverna.core.database.service import DatabaseService
from noverna.core.exceptions import DatabaseError, RenewNotAllowedError
from noverna.core.logging.logger import get_logger, shutdown_logging
from noverna.migrations.runner import MigrationRunner, MigrationRunResult

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_NOT_CONFIRMED = 2


def _print_result(result: MigrationRunResult) -> None:
    if result.success:
        print(f"✓ Migrations completed. Executed: {result.executed}")
        return
    if result.checksum_mismatch:
        print(f"❌ Migration {result.failed_version} was modified after it was applied.")
    elif result.failed_version:
        print(f"❌ Migration {result.failed_version} failed. Executed before failure: {result.executed}")
    else:
        print(f"❌ Migration run failed: {result.error}")


async def _with_database(
    action: Callable[[MigrationRunner], Awaitable[int]],
    migrations_dir: Optional[Path],
) -> int:
    database = DatabaseService()
    try:
        await database.initialize()
    except DatabaseError as exc:
        print(f"❌ Database is not reachable: {exc.details.get('error')}")
        return EXIT_FAILURE

    try:
        return await action(MigrationRunner(database, migrations_dir))
    finally:
        await database.shutdown()


async def _migrate(runner: MigrationRunner) -> int:
    result = await runner.run_pending_migrations()
    _print_result(result)
    return EXIT_OK if result.success else EXIT_FAILURE


async def _status(runner: MigrationRunner) -> int:
    statuses = await runner.get_status()
    if not statuses:
        print(f"No migrations found in {runner.migrations_dir}")
        return EXIT_OK

    print(f"{'VERSION':<10}{'NAME':<36}{'STATE':<10}{'EXECUTED AT':<22}CHECKSUM")
    for status in statuses:
        if not status.applied:
            state = "pending"
        elif status.success:
            state = "applied"
        else:
            state = "failed"
        executed_at = status.executed_at.isoformat(sep=" ", timespec="seconds") if status.executed_at else "-"
        checksum = {True: "ok", False: "MODIFIED", None: "-"}[status.checksum_matches]
        print(f"{status.version:<10}{status.name:<36}{state:<10}{executed_at:<22}{checksum}")
        if status.error_message:
            print(f"{'':<10}error: {status.error_message}")
    return EXIT_OK


async def _renew(runner: MigrationRunner) -> int:
    result = await runner.renew_database()
    if result.success:
        print(f"✓ Database renewed. Migrations executed: {result.executed}")
        return EXIT_OK
    _print_result(result)
    return EXIT_FAILURE


def _cmd_new(name: str, migrations_dir: Optional[Path]) -> int:
    runner = MigrationRunner(database=None, migrations_dir=migrations_dir)  # type: ignore[arg-type]
    try:
        path = runner.create_migration(name)
    except (ValueError, FileExistsError) as exc:
        print(f"❌ {exc}")
        return EXIT_FAILURE
    print(f"✓ Created {path}")
    return EXIT_OK


def _cmd_renew(confirm: bool, migrations_dir: Optional[Path]) -> int:
    if not confirm:
        print("=" * 60)
        print("⚠️  WARNING: DATABASE RENEW")
        print("⚠️  This will DELETE ALL DATA in the managed schemas!")
        print("=" * 60)
        print("Run 'noverna-db renew --confirm' to proceed.")
        return EXIT_NOT_CONFIRMED

    if not Config.destructive_commands_allowed():
        error = RenewNotAllowedError(Config.ENVIRONMENT, Config.DATABASE_COMMANDS_ENABLED)
        print(f"❌ {error.message}")
        return EXIT_FAILURE

    return asyncio.run(_with_database(_renew, migrations_dir))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="noverna-db", description="Noverna database tool")
    parser.add_argument(
        "--migrations-dir",
        type=Path,
        default=None,
        help="Migration directory (default: MIGRATIONS_DIR)",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("migrate", help="Apply pending migrations")
    commands.add_parser("status", help="Show migration status")
    new = commands.add_parser("new", help="Create a new migration file")
    new.add_argument("name")
    renew = commands.add_parser("renew", help="Drop all objects and re-run migrations (development only)")
    renew.add_argument("--confirm", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "new":
            return _cmd_new(args.name, args.migrations_dir)
        if args.command == "renew":
            return _cmd_renew(args.confirm, args.migrations_dir)
        action = {"migrate": _migrate, "status": _status}[args.command]
        return asyncio.run(_with_database(action, args.migrations_dir))
    finally:
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main())

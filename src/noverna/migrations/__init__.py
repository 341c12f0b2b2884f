"""
Forward-only schema migrations for Noverna Core.
"""

from noverna.migrations.files import MigrationFile, compute_checksum, discover_migrations
from noverna.migrations.runner import MigrationRunner, MigrationRunResult, MigrationStatus

__all__ = [
    "MigrationFile",
    "MigrationRunResult",
    "MigrationRunner",
    "MigrationStatus",
    "compute_checksum",
    "discover_migrations",
]

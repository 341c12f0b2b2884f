"""
Database subsystem for Noverna Core.

Exports the async PostgreSQL adapter. Storages and the migration runner
receive an instance through their constructors.
"""

from noverna.core.database.service import DatabaseService

__all__ = [
    "DatabaseService",
]

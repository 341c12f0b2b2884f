"""
Migration file discovery.

Migration files live in one directory and are named ``<version>_<name>.sql``
(for example ``001_base_schema.sql``). Versions are ordered numerically, so
``010_x`` runs after ``002_y``. Files that do not match the pattern are
ignored. Every version must be claimed by exactly one file.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from noverna.core.logging.logger import get_logger

logger = get_logger(__name__)

MIGRATION_FILE_PATTERN = re.compile(r"^(\d+)_(.+)\.sql$")


@dataclass(frozen=True)
class MigrationFile:
    """A discovered migration file."""

    version: str
    name: str
    filename: str
    path: Path

    @property
    def version_number(self) -> int:
        return int(self.version)

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def read_text(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def checksum(self) -> str:
        return compute_checksum(self.read_bytes())


def compute_checksum(content: Union[bytes, str]) -> str:
    """SHA-256 hex digest used to detect edits to applied migrations."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def parse_migration_filename(filename: str) -> Optional[Tuple[str, str]]:
    match = MIGRATION_FILE_PATTERN.match(filename)
    if match is None:
        return None
    return match.group(1), match.group(2)


def canonical_version(raw: str) -> str:
    """Zero-pad a numeric prefix to three digits: ``1`` and ``0001`` become ``001``."""
    return f"{int(raw):03d}"


def find_duplicate_versions(migrations: List[MigrationFile]) -> Dict[str, List[str]]:
    """Map each version claimed by more than one file to those filenames."""
    claimed: Dict[str, List[str]] = {}
    for migration in migrations:
        claimed.setdefault(migration.version, []).append(migration.filename)
    return {version: sorted(files) for version, files in claimed.items() if len(files) > 1}


def discover_migrations(directory: Union[str, Path]) -> List[MigrationFile]:
    """
    Return the migration files in ``directory`` sorted by numeric version.

    Versions are stored in canonical form, so ``1_x.sql`` and ``001_x.sql``
    claim the same version. A missing directory yields an empty list.
    """
    root = Path(directory)
    if not root.is_dir():
        logger.warning(
            "Migrations directory not found",
            extra={"migrations_dir": str(root)},
        )
        return []

    migrations: List[MigrationFile] = []
    for entry in root.iterdir():
        if not entry.is_file():
            continue
        parsed = parse_migration_filename(entry.name)
        if parsed is None:
            logger.debug("Skipping non-migration file", extra={"migration_file": entry.name})
            continue
        version, name = parsed
        migrations.append(
            MigrationFile(version=canonical_version(version), name=name, filename=entry.name, path=entry)
        )

    migrations.sort(key=lambda migration: (migration.version_number, migration.filename))

    logger.info(
        "Discovered %d migration files",
        len(migrations),
        extra={"migrations_dir": str(root)},
    )
    return migrations

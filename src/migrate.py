"""
Schema migrations for the Infrastructure store.

Forward-only SQL files in ``migrations/`` named ``NNN_description.sql`` are
applied in version order, each in its own transaction. The checksum of every
applied file is recorded so that edits to already-applied migrations are
detected instead of silently ignored.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")


class MigrationError(Exception):
    """An applied migration no longer matches its file on disk."""


@dataclass(frozen=True)
class Migration:
    """A migration file discovered on disk."""

    version: str
    filename: str
    path: Path

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.read().encode()).hexdigest()


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum VARCHAR(64) NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations() -> List[Migration]:
    """
    Discover migration files, sorted by version.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    if not MIGRATIONS_DIR.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {MIGRATIONS_DIR}")

    migrations = []
    for entry in sorted(MIGRATIONS_DIR.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            migrations.append(Migration(match.group(1), entry.name, entry))
    return migrations


async def get_applied_checksums(conn: asyncpg.Connection) -> Dict[str, str]:
    """Map of applied migration version to recorded checksum."""
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    return {row["version"]: row["checksum"] for row in rows}


def verify_applied(migrations: List[Migration], applied: Dict[str, str]) -> None:
    """
    Check that applied migrations still match their files.

    Raises:
        MigrationError: If an applied migration file was modified.
    """
    for migration in migrations:
        recorded = applied.get(migration.version)
        if recorded is not None and recorded != migration.checksum:
            raise MigrationError(
                f"Migration {migration.filename} was modified after being applied"
            )


async def apply_migration(pool: asyncpg.Pool, migration: Migration) -> None:
    """Apply a single migration and record it, in one transaction."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(migration.read())
            await conn.execute(
                """
                INSERT INTO schema_migrations (version, filename, checksum)
                VALUES ($1, $2, $3)
                """,
                migration.version,
                migration.filename,
                migration.checksum,
            )

    logger.info(f"Applied migration {migration.filename}")


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Apply all pending migrations in version order.

    Returns:
        Number of migrations applied.

    Raises:
        MigrationError: If an already-applied migration was modified.
        asyncpg.PostgresError: If a migration fails (it is rolled back;
            previously applied migrations remain).
    """
    async with pool.acquire() as conn:
        await ensure_migration_table(conn)
        applied = await get_applied_checksums(conn)

    migrations = discover_migrations()
    verify_applied(migrations, applied)

    pending = [m for m in migrations if m.version not in applied]
    if not pending:
        logger.info("Database schema is up to date")
        return 0

    logger.info(f"Applying {len(pending)} pending migration(s)")
    for migration in pending:
        await apply_migration(pool, migration)

    return len(pending)

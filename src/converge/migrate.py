"""
Database migration runner for the PostgreSQL state backend.

Applies forward-only SQL migrations shipped in ``converge/migrations``.
Each migration runs in its own transaction and is recorded with a checksum
so that edits to an already-applied file are reported.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Dict, List, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

MIGRATION_TABLE = "converge_schema_migrations"


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the migration tracking table if it doesn't exist."""
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {MIGRATION_TABLE} (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum CHAR(64) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations(directory: Path = MIGRATIONS_DIR) -> List[Tuple[str, str, Path]]:
    """
    Discover migration files.

    Returns:
        Sorted list of (version, filename, path) tuples.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
        ValueError: If two files share a version number.
    """
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    migrations = []
    seen: Dict[str, str] = {}
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if not match or not entry.is_file():
            continue
        version = match.group(1)
        if version in seen:
            raise ValueError(
                f"Duplicate migration version {version}: {seen[version]}, {entry.name}"
            )
        seen[version] = entry.name
        migrations.append((version, entry.name, entry))

    return migrations


def checksum(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


async def get_applied(conn: asyncpg.Connection) -> Dict[str, str]:
    """Map of applied migration version to recorded checksum."""
    rows = await conn.fetch(f"SELECT version, checksum FROM {MIGRATION_TABLE}")
    return {row["version"]: row["checksum"] for row in rows}


async def apply_migration(
    pool: asyncpg.Pool, version: str, filename: str, path: Path
) -> None:
    """Apply a single migration in its own transaction."""
    sql = path.read_text(encoding="utf-8")

    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                f"INSERT INTO {MIGRATION_TABLE} (version, filename, checksum) "
                "VALUES ($1, $2, $3)",
                version,
                filename,
                checksum(path),
            )

    logger.info(f"Applied migration {filename}")


async def run_migrations(pool: asyncpg.Pool, directory: Path = MIGRATIONS_DIR) -> int:
    """
    Discover and apply all pending migrations in order.

    Returns:
        Number of migrations applied.

    Raises:
        asyncpg.PostgresError: If a migration fails (it is rolled back;
            previously applied migrations remain).
    """
    async with pool.acquire() as conn:
        await ensure_migration_table(conn)
        applied = await get_applied(conn)

    pending = []
    for version, filename, path in discover_migrations(directory):
        if version not in applied:
            pending.append((version, filename, path))
        elif applied[version] != checksum(path):
            logger.warning(f"Migration {filename} changed after it was applied")

    if not pending:
        logger.info("State database schema is up to date")
        return 0

    logger.info(f"Applying {len(pending)} pending migration(s)")
    for version, filename, path in pending:
        await apply_migration(pool, version, filename, path)

    return len(pending)

"""Auto-migration runner: applies pending SQL migrations on startup.

Discovers sql/migrations/*.sql files, tracks applied versions in
public.schema_migrations, and executes pending ones in order.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent.parent / "sql" / "migrations"

_BOOTSTRAP_SQL = """
CREATE TABLE IF NOT EXISTS public.schema_migrations (
    version    VARCHAR(20) PRIMARY KEY,
    name       VARCHAR(255) NOT NULL,
    checksum   VARCHAR(64) NOT NULL,
    applied_at TIMESTAMPTZ DEFAULT now()
);
"""


async def _execute_script(conn: AsyncConnection, sql: str) -> None:
    """Run a multi-statement script on the driver connection.

    asyncpg only accepts several statements (and dollar-quoted function
    bodies) through its simple-query path, which SQLAlchemy's prepared
    execute does not use.
    """
    raw = await conn.get_raw_connection()
    await raw.driver_connection.execute(sql)


async def run_migrations(engine: AsyncEngine, migrations_dir: Path | None = None) -> list[str]:
    """Apply pending SQL migrations and return list of newly applied names."""
    directory = migrations_dir or _MIGRATIONS_DIR
    if not directory.is_dir():
        logger.debug("No migrations directory found at %s", directory)
        return []

    # Discover migration files sorted by name (e.g. 001_initial_schema.sql)
    files = sorted(directory.glob("*.sql"))
    if not files:
        return []

    applied: list[str] = []
    async with engine.begin() as conn:
        await conn.execute(text(_BOOTSTRAP_SQL))

        result = await conn.execute(text("SELECT version FROM public.schema_migrations"))
        existing = {row[0] for row in result}

        for path in files:
            # Version is the filename prefix ("001" from "001_initial_schema.sql")
            version = path.stem.split("_", 1)[0]
            if version in existing:
                continue

            sql = path.read_text(encoding="utf-8")
            checksum = hashlib.sha256(sql.encode()).hexdigest()

            logger.info("Applying migration %s ...", path.name)
            await _execute_script(conn, sql)
            await conn.execute(
                text(
                    "INSERT INTO public.schema_migrations (version, name, checksum) "
                    "VALUES (:version, :name, :checksum)"
                ),
                {"version": version, "name": path.stem, "checksum": checksum},
            )
            applied.append(path.stem)
            logger.info("Migration %s applied", path.name)

    if applied:
        logger.info("Migrations applied: %s", applied)
    else:
        logger.debug("All migrations up to date")

    return applied

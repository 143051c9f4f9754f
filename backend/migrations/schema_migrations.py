"""
Auto-migration system for schema changes.

Runs on startup: creates missing tables, adds missing columns on PostgreSQL,
and makes sure the governance indexes exist on databases created before them.
Safe to run multiple times.
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports when running standalone
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine
from database import Base
import models  # noqa: F401  registers every table on Base.metadata

logger = logging.getLogger(__name__)

# Indexes the governance layer relies on for correctness, not just speed
GOVERNANCE_INDEXES = [
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_membership_plans_active_name
    ON membership_plans (tenant_id, scope, scope_key, normalized_name)
    WHERE archived_at IS NULL
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_revenue_month_lock
    ON revenue_month_locks (tenant_id, branch_id, month)
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_branches_tenant_lower_name
    ON branches (tenant_id, lower(name))
    """,
]


async def get_table_columns(engine: AsyncEngine, table_name: str) -> set:
    """Get all column names for a table from the database."""
    async with engine.connect() as conn:
        if engine.dialect.name == "sqlite":
            result = await conn.execute(text(f"PRAGMA table_info({table_name})"))
            return {row[1] for row in result}
        result = await conn.execute(
            text("SELECT column_name FROM information_schema.columns WHERE table_name = :table_name"),
            {"table_name": table_name}
        )
        return {row[0] for row in result}


async def add_missing_columns(engine: AsyncEngine):
    """
    Add columns defined on the models but missing from existing PostgreSQL tables.
    New columns are added nullable-or-defaulted so existing rows stay valid.
    """
    if engine.dialect.name == "sqlite":
        logger.info("Skipping column detection for SQLite. create_all will handle table creation.")
        return

    logger.info("Checking for missing database columns...")
    changes_made = False

    for table_name, table in Base.metadata.tables.items():
        db_columns = await get_table_columns(engine, table_name)
        if not db_columns:
            continue

        missing_columns = {col.name for col in table.columns} - db_columns
        if not missing_columns:
            logger.debug(f"Table '{table_name}' schema is up to date")
            continue

        logger.info(f"Table '{table_name}' is missing columns: {missing_columns}")
        async with engine.begin() as conn:
            for col_name in sorted(missing_columns):
                col = table.columns[col_name]
                col_type = col.type.compile(engine.dialect)

                default_clause = ""
                default_value = getattr(col.default, "arg", None)
                if default_value is not None and not callable(default_value):
                    if isinstance(default_value, bool):
                        default_clause = f"DEFAULT {str(default_value).upper()}"
                    elif isinstance(default_value, (int, float)):
                        default_clause = f"DEFAULT {default_value}"
                    else:
                        default_clause = f"DEFAULT '{getattr(default_value, 'value', default_value)}'"

                nullable = "NOT NULL" if (not col.nullable and default_clause) else "NULL"
                await conn.execute(text(
                    f"ALTER TABLE {table_name} ADD COLUMN IF NOT EXISTS {col_name} {col_type} {nullable} {default_clause}"
                ))
                logger.info(f"Added column {table_name}.{col_name}")
                changes_made = True

    if changes_made:
        logger.info("Schema migration completed - columns added")
    else:
        logger.info("Schema is up to date - no changes needed")


async def backfill_derived_plan_columns(engine: AsyncEngine):
    """Fill normalized_name / scope_key on plans written before they existed"""
    async with engine.begin() as conn:
        await conn.execute(text(
            "UPDATE membership_plans SET normalized_name = LOWER(TRIM(name)) WHERE normalized_name IS NULL"
        ))
        await conn.execute(text(
            "UPDATE membership_plans SET scope_key = 'TENANT' WHERE scope_key IS NULL AND branch_id IS NULL"
        ))
        await conn.execute(text(
            "UPDATE membership_plans SET scope_key = CAST(branch_id AS VARCHAR(50)) "
            "WHERE scope_key IS NULL AND branch_id IS NOT NULL"
        ))


async def ensure_governance_indexes(engine: AsyncEngine):
    async with engine.begin() as conn:
        for statement in GOVERNANCE_INDEXES:
            await conn.execute(text(statement))
    logger.info("Governance indexes exist")


async def run_migrations(engine: AsyncEngine):
    """
    Main migration entry point.
    1. Creates missing tables (via create_all)
    2. Adds missing columns to existing tables
    3. Backfills derived plan columns
    4. Ensures the uniqueness indexes exist
    """
    logger.info("=" * 60)
    logger.info("Starting database schema migration...")
    logger.info("=" * 60)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("All tables exist")

    await add_missing_columns(engine)
    await backfill_derived_plan_columns(engine)
    await ensure_governance_indexes(engine)

    logger.info("=" * 60)
    logger.info("Database schema migration completed!")
    logger.info("=" * 60)


if __name__ == "__main__":
    # Allow running migrations standalone
    from database import engine as app_engine
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_migrations(app_engine))

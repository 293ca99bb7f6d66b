#!/usr/bin/env python3
"""
Database Initialization Script
==============================

Create the Mind Measure PostgreSQL schema and optionally seed an
administrator role.

Usage:
    python scripts/init_databases.py
    python scripts/init_databases.py --dry-run
    python scripts/init_databases.py --drop --seed-admin <user-id>

Version: 0.1.0
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import text
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.schema import CreateTable

from shared.backend.schema import create_schema, metadata, user_roles
from shared.config import settings
from shared.logging import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False, service_name="init-db")
logger = get_logger(__name__)


def render_ddl() -> str:
    """CREATE TABLE statements for every table, in dependency order."""
    dialect = postgresql.dialect()
    return "\n".join(
        f"{str(CreateTable(table).compile(dialect=dialect)).strip()};\n"
        for table in metadata.sorted_tables
    )


async def init_postgres(drop: bool, admin_user_id: str | None) -> bool:
    """Create the schema and optionally grant the admin role."""
    engine = create_async_engine(
        settings.postgres.async_url,
        connect_args={"ssl": "require"} if settings.postgres.ssl else {},
    )
    try:
        async with engine.connect() as conn:
            version = (await conn.execute(text("SELECT version()"))).scalar()
            logger.info("postgres_connected", version=str(version)[:50])

        tables = await create_schema(engine, drop_existing=drop)
        logger.info("postgres_schema_ready", tables=tables)

        if admin_user_id:
            async with engine.begin() as conn:
                await conn.execute(
                    postgresql.insert(user_roles)
                    .values(user_id=admin_user_id, role="admin")
                    .on_conflict_do_nothing()
                )
            logger.info("admin_role_seeded", user_id=admin_user_id)
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.error("postgres_init_failed", error=str(e))
        return False
    finally:
        await engine.dispose()


async def main(args: argparse.Namespace) -> int:
    """Main initialization function."""
    if args.dry_run:
        sys.stdout.write(render_ddl())
        return 0

    logger.info(
        "database_init_starting",
        host=settings.postgres.host,
        database=settings.postgres.db,
        drop=args.drop,
    )
    ok = await init_postgres(args.drop, args.seed_admin)
    if not ok:
        return 1

    logger.info("database_init_completed")
    return 0


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Initialize the Mind Measure database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the DDL instead of executing it",
    )
    parser.add_argument(
        "--drop",
        action="store_true",
        help="Drop existing tables first (destroys data)",
    )
    parser.add_argument(
        "--seed-admin",
        metavar="USER_ID",
        help="Grant the admin role to this user id",
    )

    return parser.parse_args()


if __name__ == "__main__":
    args = parse_args()
    exit_code = asyncio.run(main(args))
    sys.exit(exit_code)

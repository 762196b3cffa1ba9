#!/usr/bin/env python3
"""
Database Migration — Create the session and drip tables from the ORM models.

Usage:
    python scripts/migrate_db.py                       # create missing tables
    python scripts/migrate_db.py --check               # report only, no changes
    python scripts/migrate_db.py --config prod.yaml    # alternate settings file
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

_TABLE_QUERIES = {
    "postgresql": "SELECT tablename FROM pg_tables WHERE schemaname = 'public'",
    "mysql": "SHOW TABLES",
    "sqlite": "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'",
}


async def _existing_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text
    result = await conn.execute(text(_TABLE_QUERIES.get(dialect, _TABLE_QUERIES["sqlite"])))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False, config_path: str = None) -> int:
    from config.settings import load_settings
    load_settings(config_path)

    from database.session import get_engine, init_db, close_db
    from database.models import Base

    engine = get_engine()
    dialect = engine.dialect.name
    url = str(engine.url)
    defined = set(Base.metadata.tables.keys())

    print(f"Database: {dialect}")
    print(f"URL: {url.split('@')[-1] if '@' in url else url}")
    print(f"Tables defined: {', '.join(sorted(defined))}")

    async with engine.connect() as conn:
        existing = await _existing_tables(conn, dialect)
    missing = defined - set(existing)

    if check_only:
        print(f"Tables existing: {', '.join(existing) or '(none)'}")
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return 1 if missing else 0

    print("Running database migration...")
    await init_db(engine)

    async with engine.connect() as conn:
        existing = await _existing_tables(conn, dialect)
    still_missing = defined - set(existing)
    await close_db()

    if still_missing:
        print(f"Tables still missing: {', '.join(sorted(still_missing))}")
        return 1
    print(f"Tables created/verified: {', '.join(sorted(defined))}")
    print("Migration complete. ✓")
    return 0


def main():
    parser = argparse.ArgumentParser(description="LeadFlow database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, config_path=args.config)))


if __name__ == "__main__":
    main()

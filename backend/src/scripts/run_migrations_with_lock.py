from __future__ import annotations

import asyncio
import os
import subprocess
import sys

import asyncpg


# Shared by every replica so only one runs `alembic upgrade` at a time.
MIGRATION_LOCK_ID = 424242001

ALEMBIC_CMD = ["alembic", "-c", "backend/alembic.ini", "upgrade", "head"]


def _dsn_for_asyncpg(database_url: str) -> str:
    # App URLs use SQLAlchemy dialect prefixes; asyncpg wants plain postgresql://
    if database_url.startswith("postgresql+asyncpg://"):
        return database_url.replace("postgresql+asyncpg://", "postgresql://", 1)
    return database_url


def _upgrade() -> int:
    return subprocess.run(ALEMBIC_CMD, check=True).returncode


async def _run() -> int:
    database_url = os.getenv("DATABASE_URL", "")
    if not database_url:
        print("DATABASE_URL is not set; the JSON store needs no migrations.", file=sys.stderr)
        return 0
    if not database_url.startswith("postgresql"):
        # SQLite and friends: single writer, no advisory locks needed.
        return _upgrade()

    conn = await asyncpg.connect(_dsn_for_asyncpg(database_url))
    try:
        await conn.execute("SELECT pg_advisory_lock($1);", MIGRATION_LOCK_ID)
        try:
            return _upgrade()
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1);", MIGRATION_LOCK_ID)
    finally:
        await conn.close()


def main() -> None:
    raise SystemExit(asyncio.run(_run()))


if __name__ == "__main__":
    main()

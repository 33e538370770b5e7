from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession

from .. import config


_ENGINE: Optional[AsyncEngine] = None


def get_engine() -> AsyncEngine:
    global _ENGINE
    if _ENGINE is None:
        if not config.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set")
        _ENGINE = create_async_engine(config.DATABASE_URL, pool_pre_ping=True)
    return _ENGINE


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """One unit of work: commit when the block exits cleanly, roll back otherwise.

    Streaming responses outlive the request scope and background writes run
    after it, so callers open their own scope instead of sharing one session.
    """
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise

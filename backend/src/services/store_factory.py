from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable

from sqlalchemy.exc import SQLAlchemyError

from .. import config
from ..db.session import session_scope
from .conversation_store import ConversationStore
from .errors import PersistenceError
from .json_store import get_default_store as get_json_store
from .postgres_store import PostgresConversationStore

# Opens one unit of work; the store is valid only inside the `async with` block.
StoreFactory = Callable[[], AsyncContextManager[ConversationStore]]


@asynccontextmanager
async def open_store() -> AsyncIterator[ConversationStore]:
    if config.DATABASE_URL:
        try:
            async with session_scope() as session:
                yield PostgresConversationStore(session)
        except (SQLAlchemyError, OSError) as e:
            # Connect and commit failures surface here, outside the store's own wrapping.
            raise PersistenceError(f"Database unavailable: {e}") from e
        return
    yield get_json_store()


def get_store_factory() -> StoreFactory:
    return open_store

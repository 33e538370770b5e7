import os

# Ensure config reads these during import in tests.
os.environ.setdefault("ALLOW_NO_AUTH", "true")
os.environ.setdefault("SESSION_TOKEN_PEPPER", "test-pepper")
os.environ.setdefault("LLM_API_KEY", "sk-test-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import uuid
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from backend.src.db.models import utcnow
from backend.src.services.conversation_store import ConversationRecord, MessageRecord
from backend.src.services.errors import PersistenceError


@pytest_asyncio.fixture
async def engine(monkeypatch):
    test_engine = create_async_engine(os.environ["DATABASE_URL"])

    import backend.src.db.session as session_module

    session_module._ENGINE = test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    try:
        yield test_engine
    finally:
        await test_engine.dispose()
        session_module._ENGINE = None


@pytest_asyncio.fixture
async def session(engine):
    async with AsyncSession(engine, expire_on_commit=False) as s:
        yield s


class FakeStore:
    """In-memory ConversationStore; `fail_appends` makes every append raise."""

    def __init__(self):
        self.conversations: Dict[str, ConversationRecord] = {}
        self.messages: Dict[str, List[MessageRecord]] = {}
        self.deleted: List[str] = []
        self.touched: List[str] = []
        self.fail_appends = False

    async def find_owned(self, conversation_id, user_id):
        convo = self.conversations.get(conversation_id)
        if convo is None or convo.user_id != user_id:
            return None
        return convo

    async def list_conversations(self, user_id):
        owned = [c for c in self.conversations.values() if c.user_id == user_id]
        for c in owned:
            c.message_count = len(self.messages.get(c.id, []))
        return sorted(owned, key=lambda c: c.updated_at, reverse=True)

    async def create(self, user_id, title):
        now = utcnow()
        record = ConversationRecord(id=str(uuid.uuid4()), user_id=user_id, title=title, created_at=now, updated_at=now)
        self.conversations[record.id] = record
        self.messages[record.id] = []
        return record

    async def append_message(self, conversation_id, role, parts):
        if self.fail_appends:
            raise PersistenceError("store is down")
        if conversation_id not in self.conversations:
            raise PersistenceError(f"Conversation {conversation_id} not found")
        record = MessageRecord(
            id=str(uuid.uuid4()), conversation_id=conversation_id, role=role, parts=list(parts), created_at=utcnow()
        )
        self.messages[conversation_id].append(record)
        return record

    async def touch(self, conversation_id):
        if conversation_id not in self.conversations:
            raise PersistenceError(f"Conversation {conversation_id} not found")
        self.conversations[conversation_id].updated_at = utcnow()
        self.touched.append(conversation_id)

    async def list_messages(self, conversation_id):
        return list(self.messages.get(conversation_id, []))

    async def delete(self, conversation_id):
        self.conversations.pop(conversation_id, None)
        self.messages.pop(conversation_id, None)
        self.deleted.append(conversation_id)

    def factory(self):
        @asynccontextmanager
        async def open_fake_store():
            yield self

        return open_fake_store


class FakeCompletionStream:
    """Stands in for engine.completions.CompletionStream."""

    def __init__(self, fragments: List[str], *, fail_with: Optional[Exception] = None, model: str = "fake"):
        self.fragments = fragments
        self.fail_with = fail_with
        self.model = model
        self.closed = False

    async def deltas(self):
        for fragment in self.fragments:
            yield fragment
        if self.fail_with is not None:
            raise self.fail_with

    async def aclose(self):
        self.closed = True


class FakeOpener:
    """Records upstream calls and hands out a FakeCompletionStream, or raises on open."""

    def __init__(self, fragments=None, *, fail_with=None, open_error=None):
        self.fragments = fragments if fragments is not None else ["Hel", "lo", "!"]
        self.fail_with = fail_with
        self.open_error = open_error
        self.calls: List[dict] = []
        self.streams: List[FakeCompletionStream] = []

    async def __call__(self, model, messages):
        self.calls.append({"model": model, "messages": messages})
        if self.open_error is not None:
            raise self.open_error
        stream = FakeCompletionStream(self.fragments, fail_with=self.fail_with, model=model)
        self.streams.append(stream)
        return stream


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def opener():
    return FakeOpener()


@pytest.fixture
def chat_app(fake_store, opener):
    """The app with the store and upstream swapped for in-memory fakes."""
    from backend.src.app.main import app
    from backend.src.app.routes.chat import get_stream_opener
    from backend.src.services.store_factory import get_store_factory

    app.dependency_overrides[get_store_factory] = lambda: fake_store.factory()
    app.dependency_overrides[get_stream_opener] = lambda: opener
    try:
        yield app
    finally:
        app.dependency_overrides.clear()


"""Background persistence of chat turns.

Writes run as tracked asyncio tasks so the streaming response never waits on
storage. A failed write is logged and kept in a bounded failure log instead of
reaching the client. Writes for one conversation run one at a time, in the
order they were scheduled, within this process.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

from .. import config
from ..db.models import utcnow
from ..engine.content import ContentPart, TextPart
from .conversation_store import ConversationStore
from .store_factory import StoreFactory, open_store

logger = logging.getLogger(__name__)

StoreOp = Callable[[ConversationStore], Awaitable[None]]


@dataclass(frozen=True)
class PersistenceFailure:
    conversation_id: str
    role: str
    error: str
    occurred_at: datetime = field(default_factory=utcnow)


class TurnPersister:
    def __init__(self, store_factory: StoreFactory = open_store, failure_log_size: Optional[int] = None):
        self._store_factory = store_factory
        size = failure_log_size if failure_log_size is not None else config.PERSISTENCE_FAILURE_LOG_SIZE
        self.failures: Deque[PersistenceFailure] = deque(maxlen=max(1, size))
        self._tasks: Set[asyncio.Task] = set()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, int] = {}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule_user_turn(
        self,
        conversation_id: str,
        parts: List[ContentPart],
        *,
        store_factory: Optional[StoreFactory] = None,
    ) -> asyncio.Task:
        async def op(store: ConversationStore) -> None:
            await store.append_message(conversation_id, "user", parts)

        return self._schedule(conversation_id, "user", op, store_factory)

    def schedule_assistant_turn(
        self,
        conversation_id: str,
        text: str,
        *,
        store_factory: Optional[StoreFactory] = None,
    ) -> asyncio.Task:
        async def op(store: ConversationStore) -> None:
            await store.append_message(conversation_id, "assistant", [TextPart(text=text)])
            await store.touch(conversation_id)

        return self._schedule(conversation_id, "assistant", op, store_factory)

    def _schedule(
        self,
        conversation_id: str,
        role: str,
        op: StoreOp,
        store_factory: Optional[StoreFactory],
    ) -> asyncio.Task:
        factory = store_factory or self._store_factory
        # Claim the lock slot now so tasks queue in scheduling order.
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._pending[conversation_id] = self._pending.get(conversation_id, 0) + 1

        task = asyncio.create_task(self._run(conversation_id, role, op, factory, lock))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        conversation_id: str,
        role: str,
        op: StoreOp,
        factory: StoreFactory,
        lock: asyncio.Lock,
    ) -> None:
        try:
            async with lock:
                async with factory() as store:
                    await op(store)
            logger.debug("persist_ok conversation_id=%s role=%s", conversation_id, role)
        except Exception as e:
            logger.warning(
                "persist_failed conversation_id=%s role=%s error=%s", conversation_id, role, e, exc_info=True
            )
            self.failures.append(PersistenceFailure(conversation_id=conversation_id, role=role, error=str(e)))
        finally:
            remaining = self._pending.get(conversation_id, 1) - 1
            if remaining <= 0:
                self._pending.pop(conversation_id, None)
                self._locks.pop(conversation_id, None)
            else:
                self._pending[conversation_id] = remaining

    async def drain(self) -> None:
        """Wait for every scheduled write, including ones scheduled while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

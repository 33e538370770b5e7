from __future__ import annotations

import uuid
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..db.models import Conversation, Message, utcnow
from ..engine.content import ContentPart, decode_content, encode_content
from .conversation_store import ConversationRecord, MessageRecord
from .errors import PersistenceError


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _conversation_record(convo: Conversation, message_count: int = 0) -> ConversationRecord:
    return ConversationRecord(
        id=str(convo.id),
        user_id=str(convo.user_id),
        title=convo.title,
        created_at=convo.created_at,
        updated_at=convo.updated_at,
        message_count=message_count,
    )


def _message_record(msg: Message) -> MessageRecord:
    return MessageRecord(
        id=str(msg.id),
        conversation_id=str(msg.conversation_id),
        role=msg.role,
        parts=decode_content(msg.content),
        created_at=msg.created_at,
    )


class PostgresConversationStore:
    """SQLModel-backed store; works on any async SQLAlchemy dialect (asyncpg, aiosqlite).

    Writes flush but never commit: the caller's session scope owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get(self, conversation_id: str) -> Conversation | None:
        conversation_uuid = _parse_uuid(conversation_id)
        if conversation_uuid is None:
            return None
        return await self._session.get(Conversation, conversation_uuid)

    async def find_owned(self, conversation_id: str, user_id: str) -> Optional[ConversationRecord]:
        conversation_uuid = _parse_uuid(conversation_id)
        user_uuid = _parse_uuid(user_id)
        if conversation_uuid is None or user_uuid is None:
            return None
        convo = (
            await self._session.exec(
                select(Conversation)
                .where(Conversation.id == conversation_uuid)
                .where(Conversation.user_id == user_uuid)
            )
        ).first()
        if convo is None:
            return None
        return _conversation_record(convo)

    async def list_conversations(self, user_id: str) -> List[ConversationRecord]:
        user_uuid = _parse_uuid(user_id)
        if user_uuid is None:
            return []
        stmt = (
            select(Conversation, func.count(Message.id).label("message_count"))
            .where(Conversation.user_id == user_uuid)
            .join(Message, Message.conversation_id == Conversation.id, isouter=True)
            .group_by(Conversation.id)
            .order_by(Conversation.updated_at.desc())
        )
        rows = (await self._session.exec(stmt)).all()
        return [_conversation_record(convo, int(count or 0)) for convo, count in rows]

    async def create(self, user_id: str, title: Optional[str]) -> ConversationRecord:
        user_uuid = _parse_uuid(user_id)
        if user_uuid is None:
            raise PersistenceError(f"Invalid user id {user_id!r}")
        now = utcnow()
        convo = Conversation(user_id=user_uuid, title=title, created_at=now, updated_at=now)
        try:
            self._session.add(convo)
            await self._session.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create conversation: {e}") from e
        return _conversation_record(convo)

    async def append_message(self, conversation_id: str, role: str, parts: List[ContentPart]) -> MessageRecord:
        convo = await self._get(conversation_id)
        if convo is None:
            raise PersistenceError(f"Conversation {conversation_id} not found")

        now = utcnow()
        msg = Message(
            conversation_id=convo.id,
            role=role,
            content=encode_content(parts),
            created_at=now,
        )
        convo.updated_at = now
        try:
            self._session.add(msg)
            self._session.add(convo)
            await self._session.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to append message to {conversation_id}: {e}") from e
        return _message_record(msg)

    async def touch(self, conversation_id: str) -> None:
        convo = await self._get(conversation_id)
        if convo is None:
            raise PersistenceError(f"Conversation {conversation_id} not found")
        convo.updated_at = utcnow()
        try:
            self._session.add(convo)
            await self._session.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to touch conversation {conversation_id}: {e}") from e

    async def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        conversation_uuid = _parse_uuid(conversation_id)
        if conversation_uuid is None:
            return []
        msgs = (
            await self._session.exec(
                select(Message)
                .where(Message.conversation_id == conversation_uuid)
                .order_by(Message.created_at.asc())
            )
        ).all()
        return [_message_record(m) for m in msgs]

    async def delete(self, conversation_id: str) -> None:
        conversation_uuid = _parse_uuid(conversation_id)
        if conversation_uuid is None:
            return
        try:
            msgs = (await self._session.exec(select(Message).where(Message.conversation_id == conversation_uuid))).all()
            for msg in msgs:
                await self._session.delete(msg)
            await self._session.flush()
            convo = await self._session.get(Conversation, conversation_uuid)
            if convo is not None:
                await self._session.delete(convo)
                await self._session.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete conversation {conversation_id}: {e}") from e

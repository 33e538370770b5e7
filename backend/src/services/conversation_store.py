from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from ..engine.content import ContentPart, to_wire


@dataclass
class ConversationRecord:
    id: str
    user_id: str
    title: Optional[str]
    created_at: datetime
    updated_at: datetime
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "message_count": self.message_count,
        }


@dataclass
class MessageRecord:
    id: str
    conversation_id: str
    role: str
    parts: List[ContentPart] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": to_wire(self.parts),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ConversationStore(Protocol):
    """Durable conversations plus an append-only message log per conversation.

    Content crosses this boundary as parts; each backend picks its own
    encoding. Writes raise PersistenceError when the backend fails.
    """

    async def find_owned(self, conversation_id: str, user_id: str) -> Optional[ConversationRecord]: ...

    async def create(self, user_id: str, title: Optional[str]) -> ConversationRecord: ...

    async def append_message(self, conversation_id: str, role: str, parts: List[ContentPart]) -> MessageRecord: ...

    async def touch(self, conversation_id: str) -> None: ...

    async def list_messages(self, conversation_id: str) -> List[MessageRecord]: ...

    async def delete(self, conversation_id: str) -> None: ...

    async def list_conversations(self, user_id: str) -> List[ConversationRecord]: ...

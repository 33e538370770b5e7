from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class ConversationMetadata(BaseModel):
    """Conversation metadata for list view."""

    id: str
    title: Optional[str]
    created_at: str
    updated_at: str
    message_count: int


class MessageOut(BaseModel):
    """One stored turn; content is always the expanded part array."""

    id: str
    role: str
    content: List[Dict[str, Any]]
    created_at: Optional[str]


class Conversation(ConversationMetadata):
    """Full conversation with all messages."""

    messages: List[MessageOut]


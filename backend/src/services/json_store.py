"""JSON-file based ConversationStore implementation (local dev storage)."""

from __future__ import annotations

import json
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .. import config
from ..db.models import utcnow
from ..engine.content import ContentPart, decode_content, encode_content
from .conversation_store import ConversationRecord, ConversationStore, MessageRecord
from .errors import PersistenceError


def _conversation_record(data: Dict[str, Any]) -> ConversationRecord:
    return ConversationRecord(
        id=data["id"],
        user_id=data["user_id"],
        title=data.get("title"),
        created_at=datetime.fromisoformat(data["created_at"]),
        updated_at=datetime.fromisoformat(data.get("updated_at") or data["created_at"]),
        message_count=len(data.get("messages", [])),
    )


def _message_record(conversation_id: str, data: Dict[str, Any]) -> MessageRecord:
    created_at = data.get("created_at")
    return MessageRecord(
        id=data["id"],
        conversation_id=conversation_id,
        role=data["role"],
        parts=decode_content(data.get("content")),
        created_at=datetime.fromisoformat(created_at) if created_at else None,
    )


class JsonConversationStore:
    """One file per conversation under DATA_DIR; messages are kept inline in encoded form."""

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = data_dir or config.DATA_DIR

    def ensure_data_dir(self) -> None:
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)

    def get_conversation_path(self, conversation_id: str) -> str:
        return os.path.join(self.data_dir, f"{conversation_id}.json")

    def _load(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        try:
            uuid.UUID(str(conversation_id))
        except ValueError:
            # Ids become file names; anything that is not a uuid never existed.
            return None
        path = self.get_conversation_path(conversation_id)
        if not os.path.exists(path):
            return None
        with open(path, "r") as f:
            return json.load(f)

    def _save(self, conversation: Dict[str, Any]) -> None:
        self.ensure_data_dir()
        path = self.get_conversation_path(conversation["id"])
        try:
            with open(path, "w") as f:
                json.dump(conversation, f, indent=2, ensure_ascii=False)
        except OSError as e:
            raise PersistenceError(f"Failed to write conversation {conversation['id']}: {e}") from e

    async def find_owned(self, conversation_id: str, user_id: str) -> Optional[ConversationRecord]:
        data = self._load(conversation_id)
        if data is None or data.get("user_id") != str(user_id):
            return None
        return _conversation_record(data)

    async def list_conversations(self, user_id: str) -> List[ConversationRecord]:
        self.ensure_data_dir()

        conversations = []
        for filename in os.listdir(self.data_dir):
            if not filename.endswith(".json"):
                continue
            path = os.path.join(self.data_dir, filename)
            with open(path, "r") as f:
                data = json.load(f)
            if data.get("user_id") == str(user_id):
                conversations.append(_conversation_record(data))

        conversations.sort(key=lambda c: c.updated_at, reverse=True)
        return conversations

    async def create(self, user_id: str, title: Optional[str]) -> ConversationRecord:
        now = utcnow().isoformat()
        conversation = {
            "id": str(uuid.uuid4()),
            "user_id": str(user_id),
            "title": title,
            "created_at": now,
            "updated_at": now,
            "messages": [],
        }
        self._save(conversation)
        return _conversation_record(conversation)

    async def append_message(self, conversation_id: str, role: str, parts: List[ContentPart]) -> MessageRecord:
        conversation = self._load(conversation_id)
        if conversation is None:
            raise PersistenceError(f"Conversation {conversation_id} not found")

        now = utcnow().isoformat()
        message = {"id": str(uuid.uuid4()), "role": role, "content": encode_content(parts), "created_at": now}
        conversation["messages"].append(message)
        conversation["updated_at"] = now
        self._save(conversation)
        return _message_record(conversation_id, message)

    async def touch(self, conversation_id: str) -> None:
        conversation = self._load(conversation_id)
        if conversation is None:
            raise PersistenceError(f"Conversation {conversation_id} not found")
        conversation["updated_at"] = utcnow().isoformat()
        self._save(conversation)

    async def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        conversation = self._load(conversation_id)
        if conversation is None:
            return []
        return [_message_record(conversation_id, m) for m in conversation.get("messages", [])]

    async def delete(self, conversation_id: str) -> None:
        if self._load(conversation_id) is None:
            return
        os.remove(self.get_conversation_path(conversation_id))


_DEFAULT_STORE: ConversationStore = JsonConversationStore()


def get_default_store() -> ConversationStore:
    return _DEFAULT_STORE

"""Client-side copy of one conversation's messages.

A single state machine, EMPTY -> LOADING -> LOADED(content hash), decides
whether a fetched message list still needs applying: a fetch whose content
hash matches what is already shown is a no-op.
"""

from __future__ import annotations

import hashlib
import json
from enum import Enum
from typing import List, Optional

from ..engine.content import to_wire
from .stream_consumer import TranscriptMessage


class TranscriptState(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    LOADED = "loaded"


def content_hash(messages: List[TranscriptMessage]) -> str:
    payload = [[m.id, m.role, to_wire(m.parts)] for m in messages]
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


class Transcript:
    def __init__(self) -> None:
        self.state = TranscriptState.EMPTY
        self.conversation_id: Optional[str] = None
        self.content_hash: Optional[str] = None
        self.messages: List[TranscriptMessage] = []

    def reset(self) -> None:
        self.state = TranscriptState.EMPTY
        self.conversation_id = None
        self.content_hash = None
        self.messages = []

    def begin_load(self, conversation_id: str) -> None:
        if conversation_id != self.conversation_id:
            self.messages = []
            self.content_hash = None
        self.conversation_id = conversation_id
        self.state = TranscriptState.LOADING

    def apply(self, conversation_id: str, messages: List[TranscriptMessage]) -> bool:
        """Show `messages` unless they are stale or already shown. Returns True if applied."""
        if conversation_id != self.conversation_id:
            # Answer for a conversation we have since navigated away from.
            return False
        digest = content_hash(messages)
        if digest == self.content_hash and not self.has_ephemeral:
            self.state = TranscriptState.LOADED
            return False
        self.messages = list(messages)
        self.content_hash = digest
        self.state = TranscriptState.LOADED
        return True

    @property
    def has_ephemeral(self) -> bool:
        return any(m.ephemeral for m in self.messages)

    def append(self, message: TranscriptMessage) -> None:
        self.messages.append(message)

    def discard(self, message_id: str) -> None:
        self.messages = [m for m in self.messages if m.id != message_id]

"""One chat exchange, from the incoming request to the last streamed line.

    AUTHENTICATING -> NORMALIZING -> RESOLVING_CONVERSATION -> STREAMING
        -> FINALIZING -> DONE

Any non-terminal state can move to ERRORED. Everything up to and including
opening the upstream stream happens in `start()`, before the HTTP response
begins, so those failures still map to a status code. After that the only
way to report trouble is an `error` line in the stream.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

import pydantic
from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field

from .. import config
from ..engine import wire
from ..engine.completions import CompletionStream
from ..engine.content import Turn, TextPart, normalize_turn, to_wire
from ..engine.prompts import SYSTEM_PROMPT
from ..utils.redact import redact_secrets
from .auth import Authenticator, UserIdentity
from .errors import ChatError, PersistenceError, ValidationError
from .persister import TurnPersister
from .store_factory import StoreFactory

logger = logging.getLogger(__name__)

StreamOpener = Callable[[str, List[Dict[str, Any]]], Awaitable[CompletionStream]]


class PipelineState(str, Enum):
    AUTHENTICATING = "authenticating"
    NORMALIZING = "normalizing"
    RESOLVING_CONVERSATION = "resolving_conversation"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    ERRORED = "errored"


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: List[Any]
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")


def parse_turns(body: Any) -> Tuple[List[Turn], Optional[str]]:
    """Validate the request body and normalize every turn in it."""
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        parsed = ChatRequest.model_validate(body)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid chat request: {e.errors()[0].get('msg', 'invalid')}") from e
    turns = [normalize_turn(raw) for raw in parsed.messages]
    return turns, parsed.conversation_id or None


def derive_title(turns: List[Turn]) -> str:
    latest_user = next((t for t in reversed(turns) if t.role == "user"), None)
    text = latest_user.text if latest_user is not None else ""
    if not text:
        return config.DEFAULT_CONVERSATION_TITLE
    return text[: config.TITLE_MAX_CHARS]


def select_model(turns: List[Turn]) -> str:
    if any(t.has_image for t in turns):
        return config.VISION_MODEL
    return config.TEXT_MODEL


def build_model_messages(turns: List[Turn]) -> List[Dict[str, Any]]:
    """Upstream payload: the system directive first, then the client's user/assistant turns."""
    messages: List[Dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]
    for turn in turns:
        if turn.role == "system":
            continue
        if turn.has_image:
            parts = [p for p in turn.parts if not (isinstance(p, TextPart) and not p.text)]
            messages.append({"role": turn.role, "content": to_wire(parts)})
        else:
            text = "\n".join(p.text for p in turn.parts if isinstance(p, TextPart) and p.text)
            messages.append({"role": turn.role, "content": text})
    return messages


@dataclass
class ChatStream:
    conversation_id: Optional[str]
    _lines: AsyncIterator[str]

    def lines(self) -> AsyncIterator[str]:
        return self._lines


class ChatPipeline:
    def __init__(
        self,
        authenticator: Authenticator,
        store_factory: StoreFactory,
        persister: TurnPersister,
        open_stream: StreamOpener,
        *,
        request_id: Optional[str] = None,
    ):
        self._authenticator = authenticator
        self._store_factory = store_factory
        self._persister = persister
        self._open_stream = open_stream
        self.request_id = request_id or str(uuid.uuid4())
        self.state = PipelineState.AUTHENTICATING

    def _enter(self, state: PipelineState) -> None:
        self.state = state
        logger.info("chat_state request_id=%s state=%s", self.request_id, state.value)

    async def start(self, request: Request) -> ChatStream:
        try:
            self._enter(PipelineState.AUTHENTICATING)
            identity = await self._authenticator.resolve(request)

            self._enter(PipelineState.NORMALIZING)
            try:
                body = await request.json()
            except ValueError as e:
                raise ValidationError("Request body must be valid JSON") from e
            turns, requested_id = parse_turns(body)

            self._enter(PipelineState.RESOLVING_CONVERSATION)
            conversation_id, created = await self._resolve_conversation(identity, requested_id, turns)

            self._enter(PipelineState.STREAMING)
            opened = False
            try:
                upstream = await self._open_stream(select_model(turns), build_model_messages(turns))
                opened = True
            finally:
                # Also runs on cancellation, so a fresh conversation never stays empty.
                if not opened and created and conversation_id:
                    await self._discard_conversation(conversation_id)

            latest = turns[-1] if turns else None
            if conversation_id and latest is not None and latest.role == "user":
                self._persister.schedule_user_turn(conversation_id, latest.parts, store_factory=self._store_factory)
        except Exception:
            self._enter(PipelineState.ERRORED)
            raise

        return ChatStream(conversation_id=conversation_id, _lines=self._relay(upstream, conversation_id))

    async def _resolve_conversation(
        self,
        identity: UserIdentity,
        requested_id: Optional[str],
        turns: List[Turn],
    ) -> Tuple[Optional[str], bool]:
        """Existing owned conversation, a new one, or none when the store is down.

        A store outage never fails the request: the reply still streams, just
        without a conversation id and without anything being saved.
        """
        try:
            async with self._store_factory() as store:
                if requested_id:
                    found = await store.find_owned(requested_id, identity.user_id)
                    if found is not None:
                        return found.id, False
                    logger.info(
                        "chat_conversation_unknown request_id=%s conversation_id=%s", self.request_id, requested_id
                    )
                if not turns:
                    return None, False
                record = await store.create(identity.user_id, derive_title(turns))
        except PersistenceError as e:
            logger.warning("chat_conversation_unavailable request_id=%s error=%s", self.request_id, e.message)
            return None, False
        logger.info("chat_conversation_created request_id=%s conversation_id=%s", self.request_id, record.id)
        return record.id, True

    async def _discard_conversation(self, conversation_id: str) -> None:
        try:
            async with self._store_factory() as store:
                await store.delete(conversation_id)
        except Exception as e:
            logger.warning(
                "chat_conversation_discard_failed request_id=%s conversation_id=%s error=%s",
                self.request_id,
                conversation_id,
                e,
            )

    async def _relay(self, upstream: CompletionStream, conversation_id: Optional[str]) -> AsyncIterator[str]:
        chunks: List[str] = []
        try:
            async for delta in upstream.deltas():
                chunks.append(delta)
                yield wire.text_delta_line(delta)

            self._enter(PipelineState.FINALIZING)
            if conversation_id:
                self._persister.schedule_assistant_turn(
                    conversation_id, "".join(chunks), store_factory=self._store_factory
                )
            self._enter(PipelineState.DONE)
            yield wire.finish_line()
        except ChatError as e:
            self._enter(PipelineState.ERRORED)
            logger.warning("chat_stream_failed request_id=%s error=%s", self.request_id, e.message)
            yield wire.error_line(redact_secrets(e.message), error_code=e.error_code)
        except (asyncio.CancelledError, GeneratorExit):
            self._enter(PipelineState.ERRORED)
            logger.info("chat_client_disconnected request_id=%s", self.request_id)
            raise
        except Exception:
            self._enter(PipelineState.ERRORED)
            logger.exception("chat_stream_crashed request_id=%s", self.request_id)
            yield wire.error_line("Internal server error", error_code="internal_server_error")
        finally:
            await upstream.aclose()

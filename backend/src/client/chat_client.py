"""HTTP driver for the chat API: submit turns, read the reply stream, keep a transcript."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..engine.content import has_image, leading_text, normalize, to_wire
from .composer import ComposerState
from .errors import (
    ChatClientError,
    ConversationNotFound,
    RequestFailed,
    StreamCancelled,
    SubmissionInFlight,
)
from .stream_consumer import StreamConsumer, TranscriptMessage, ephemeral_id
from .transcript import Transcript

logger = logging.getLogger(__name__)


def _request_failed(response: httpx.Response) -> RequestFailed:
    detail = f"HTTP {response.status_code}"
    error_code = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = str(body.get("detail") or detail)
        error_code = body.get("error_code")
    cls = ConversationNotFound if response.status_code == 404 else RequestFailed
    return cls(detail, error_code=error_code, status_code=response.status_code)


class ChatClient:
    """One conversation view with at most one submission in flight.

    `submit` echoes the user turn into the transcript at once, streams the
    reply into a growing assistant entry, then reloads the stored transcript.
    On any failure both optimistic entries are removed again.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        session_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 120.0,
    ):
        headers = {"Authorization": f"Bearer {session_token}"} if session_token else None
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout_seconds)
        if client is not None and headers:
            self._client.headers.update(headers)
        self.transcript = Transcript()
        self.conversation_id: Optional[str] = None
        self._inflight: Optional[asyncio.Task] = None
        self._cancel_requested = False

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.cancel()
        if self._owns_client:
            await self._client.aclose()

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def list_conversations(self) -> List[Dict[str, Any]]:
        response = await self._client.get("/api/conversations")
        if response.status_code >= 400:
            raise _request_failed(response)
        return response.json()

    async def load(self, conversation_id: str) -> bool:
        """Fetch stored messages for `conversation_id`; True if the transcript changed."""
        self.transcript.begin_load(conversation_id)
        self.conversation_id = conversation_id
        response = await self._client.get(f"/api/conversations/{conversation_id}/messages")
        if response.status_code == 404:
            logger.info("conversation_missing conversation_id=%s", conversation_id)
            self.new_conversation()
        if response.status_code >= 400:
            raise _request_failed(response)
        messages = [
            TranscriptMessage(id=str(m["id"]), role=m["role"], parts=normalize(m.get("content"), strip=False))
            for m in response.json()
        ]
        return self.transcript.apply(conversation_id, messages)

    def new_conversation(self) -> None:
        self.conversation_id = None
        self.transcript.reset()

    async def delete_conversation(self, conversation_id: str) -> None:
        response = await self._client.delete(f"/api/conversations/{conversation_id}")
        if response.status_code >= 400:
            raise _request_failed(response)
        if conversation_id == self.conversation_id:
            self.new_conversation()

    def cancel(self) -> bool:
        """Abort the in-flight submission, if any. The pending `submit` raises StreamCancelled."""
        if not self.busy:
            return False
        self._cancel_requested = True
        self._inflight.cancel()
        return True

    async def submit(self, composer: ComposerState) -> TranscriptMessage:
        if self.busy:
            raise SubmissionInFlight("A message is already being sent", error_code="submission_in_flight")
        self._cancel_requested = False
        self._inflight = asyncio.ensure_future(self._submit(composer))
        try:
            return await self._inflight
        except asyncio.CancelledError:
            if self._cancel_requested:
                raise StreamCancelled("Submission cancelled", error_code="cancelled") from None
            raise
        finally:
            self._inflight = None
            self._cancel_requested = False

    async def _submit(self, composer: ComposerState) -> TranscriptMessage:
        parts = composer.build_parts()
        if not leading_text(parts) and not has_image(parts):
            raise ChatClientError("Nothing to send", error_code="empty_message")

        user_message = TranscriptMessage(id=ephemeral_id("user"), role="user", parts=parts, ephemeral=True)
        self.transcript.append(user_message)
        consumer = StreamConsumer(
            on_message=self.transcript.append,
            on_discard=lambda m: self.transcript.discard(m.id),
        )
        body = {
            "messages": [{"role": m.role, "content": to_wire(m.parts)} for m in self.transcript.messages],
            "conversationId": self.conversation_id,
        }

        try:
            request = self._client.build_request("POST", "/api/chat", json=body)
            response = await self._client.send(request, stream=True)
            try:
                if response.status_code >= 400:
                    await response.aread()
                    raise _request_failed(response)
                conversation_id = response.headers.get("X-Conversation-Id")
                if conversation_id:
                    self.conversation_id = conversation_id
                    self.transcript.conversation_id = conversation_id
                assistant = await consumer.consume(response.aiter_lines())
            finally:
                await response.aclose()
        except httpx.HTTPError as e:
            self.transcript.discard(user_message.id)
            consumer.discard()
            raise RequestFailed(f"Error sending message: {e}") from e
        except BaseException:
            self.transcript.discard(user_message.id)
            consumer.discard()
            raise

        composer.clear()
        await self._reload_after_reply()
        return assistant

    async def _reload_after_reply(self) -> None:
        if not self.conversation_id:
            return
        shown = len(self.transcript.messages)
        try:
            response = await self._client.get(f"/api/conversations/{self.conversation_id}/messages")
        except httpx.HTTPError as e:
            logger.warning("transcript_reload_failed conversation_id=%s error=%s", self.conversation_id, e)
            return
        if response.status_code >= 400:
            logger.warning(
                "transcript_reload_failed conversation_id=%s status=%s", self.conversation_id, response.status_code
            )
            return
        stored = response.json()
        # Turns are written in the background; keep the optimistic view until the store caught up.
        if len(stored) < shown:
            logger.debug("transcript_reload_behind stored=%s shown=%s", len(stored), shown)
            return
        messages = [
            TranscriptMessage(id=str(m["id"]), role=m["role"], parts=normalize(m.get("content"), strip=False))
            for m in stored
        ]
        self.transcript.apply(self.conversation_id, messages)

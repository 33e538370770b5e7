"""Client-side reader for the `0:`-prefixed chat stream."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterable, Callable, List, Optional

import httpx

from ..engine import wire
from ..engine.content import ContentPart, TextPart, leading_text
from .errors import StreamReadError

logger = logging.getLogger(__name__)


def ephemeral_id(role: str) -> str:
    return f"temp-{role}-{uuid.uuid4()}"


@dataclass
class TranscriptMessage:
    id: str
    role: str
    parts: List[ContentPart] = field(default_factory=list)
    ephemeral: bool = False

    @property
    def text(self) -> str:
        return leading_text(self.parts)


class StreamConsumer:
    """Reassembles text deltas into one assistant message, mutated in place.

    The message is created on the first delta. `on_message` is called once at
    that point so a transcript can show it while it grows; `on_discard` gets
    the same message back if the stream then fails or is cancelled.
    """

    def __init__(
        self,
        on_message: Optional[Callable[[TranscriptMessage], None]] = None,
        on_discard: Optional[Callable[[TranscriptMessage], None]] = None,
    ):
        self._on_message = on_message
        self._on_discard = on_discard
        self._fragments: List[str] = []
        self.message: Optional[TranscriptMessage] = None
        self.finished = False

    def feed_line(self, line: str) -> None:
        event = wire.parse_line(line)
        if event is None:
            return
        kind = event.get("type")
        if kind == wire.TEXT_DELTA:
            fragment = event.get("textDelta")
            if isinstance(fragment, str):
                self._append(fragment)
        elif kind == wire.FINISH:
            self.finished = True
        elif kind == wire.ERROR:
            raise StreamReadError(
                str(event.get("message") or "Stream reported an error"),
                error_code=event.get("error_code"),
            )

    def _append(self, fragment: str) -> None:
        self._fragments.append(fragment)
        text = "".join(self._fragments)
        if self.message is None:
            self.message = TranscriptMessage(
                id=ephemeral_id("assistant"), role="assistant", parts=[TextPart(text=text)], ephemeral=True
            )
            if self._on_message is not None:
                self._on_message(self.message)
        else:
            self.message.parts = [TextPart(text=text)]

    def discard(self) -> None:
        message, self.message = self.message, None
        self._fragments = []
        if message is not None and self._on_discard is not None:
            self._on_discard(message)

    async def consume(self, lines: AsyncIterable[str]) -> TranscriptMessage:
        """Read every line; return the assembled message or raise StreamReadError."""
        try:
            async for line in lines:
                self.feed_line(line)
                if self.finished:
                    break
            if not self.finished:
                raise StreamReadError("Reply stream ended before completion", error_code="incomplete_stream")
        except httpx.HTTPError as e:
            logger.info("stream_read_failed error=%s", e)
            self.discard()
            raise StreamReadError(f"Error reading reply stream: {e}") from e
        except BaseException:
            # StreamReadError and cancellation both drop the partial reply.
            self.discard()
            raise

        if self.message is None:
            self.message = TranscriptMessage(
                id=ephemeral_id("assistant"), role="assistant", parts=[TextPart(text="")], ephemeral=True
            )
        return self.message

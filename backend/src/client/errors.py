from __future__ import annotations

from typing import Optional


class ChatClientError(Exception):
    """Base class for failures seen by the chat client. Optimistic entries are already discarded."""

    def __init__(self, message: str, *, error_code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code


class RequestFailed(ChatClientError):
    """The server answered with an error status before streaming began."""


class ConversationNotFound(RequestFailed):
    pass


class StreamReadError(ChatClientError):
    """The reply stream broke, reported an error, or ended without `finish`."""


class StreamCancelled(ChatClientError):
    pass


class SubmissionInFlight(ChatClientError):
    pass

from __future__ import annotations

from typing import Optional


class ChatError(Exception):
    """Base class for chat-layer failures that map onto an HTTP response.

    `error_code` is a stable snake_case token; the app's exception handler
    returns it next to `detail` so clients can branch without parsing text.
    """

    status_code: int = 500
    error_code: str = "server_error"

    def __init__(self, message: str, *, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class AuthError(ChatError):
    """No valid identity on the request. Terminal, never retried."""

    status_code = 401
    error_code = "unauthorized"


class ValidationError(ChatError):
    """Malformed request shape. The caller must fix the request."""

    status_code = 400
    error_code = "validation_error"


class NotFoundError(ChatError):
    """Addressed conversation is absent or owned by someone else."""

    status_code = 404
    error_code = "not_found"


class PersistenceError(ChatError):
    """Conversation Store write failure. Absorbed on the streaming path."""

    status_code = 500
    error_code = "persistence_error"


class UpstreamError(ChatError):
    """Model invocation failed or returned something unusable."""

    status_code = 500
    error_code = "upstream_error"


__all__ = [
    "ChatError",
    "AuthError",
    "ValidationError",
    "NotFoundError",
    "PersistenceError",
    "UpstreamError",
]

from __future__ import annotations

import hmac
import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import AsyncContextManager, Callable, Optional, Protocol

from fastapi import Depends, HTTPException, Request, status
import logging
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .. import config
from ..db.models import AuthSession, User, utcnow
from ..db.session import session_scope
from .errors import AuthError, ChatError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserIdentity:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: str = "user"

    def to_dict(self) -> dict[str, Optional[str]]:
        return {"id": self.user_id, "email": self.email, "name": self.name, "role": self.role}


class Authenticator(Protocol):
    async def resolve(self, request: Request) -> UserIdentity:
        """Identify the caller or raise AuthError. Must not have side effects on failure."""
        ...


def hash_session_token(plaintext_token: str) -> str:
    if not config.SESSION_TOKEN_PEPPER and not config.ALLOW_NO_AUTH:
        logger.error("Missing SESSION_TOKEN_PEPPER while ALLOW_NO_AUTH is false (server misconfigured)")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="session_token_pepper_missing"
        )
    secret = (config.SESSION_TOKEN_PEPPER or "").encode("utf-8")
    msg = plaintext_token.encode("utf-8")
    return hmac.new(secret, msg, hashlib.sha256).hexdigest()


def generate_session_token() -> str:
    # Prefix makes it obvious in logs without revealing the secret.
    return f"sess_{secrets.token_urlsafe(32)}"


def session_token_from_request(request: Request) -> Optional[str]:
    token = request.cookies.get(config.SESSION_COOKIE_NAME)
    if token:
        return token
    authorization = request.headers.get("Authorization") or ""
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


async def issue_session(
    session: AsyncSession,
    user_id: uuid.UUID,
    duration_seconds: Optional[int] = None,
) -> str:
    """Store a new session for `user_id` and return the plaintext token (shown once)."""
    token = generate_session_token()
    now = utcnow()
    seconds = duration_seconds if duration_seconds is not None else config.SESSION_DURATION_SECONDS
    session.add(
        AuthSession(
            token_hash=hash_session_token(token),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(seconds=seconds),
        )
    )
    await session.flush()
    return token


class SessionAuthenticator:
    """Opaque session token (cookie or bearer header) looked up by its HMAC."""

    def __init__(self, open_session: Callable[[], AsyncContextManager[AsyncSession]] = session_scope):
        self._open_session = open_session

    async def resolve(self, request: Request) -> UserIdentity:
        token = session_token_from_request(request)
        if not token:
            raise AuthError("Not authenticated")
        if not config.DATABASE_URL and self._open_session is session_scope:
            logger.error("Session auth needs DATABASE_URL; set it or ALLOW_NO_AUTH=true")
            raise ChatError("Session store unavailable", error_code="session_store_unavailable")

        token_hash = hash_session_token(token)
        expired = False
        async with self._open_session() as session:
            row = (
                await session.exec(
                    select(AuthSession, User)
                    .join(User, User.id == AuthSession.user_id)
                    .where(AuthSession.token_hash == token_hash)
                )
            ).first()
            if row is None:
                raise AuthError("Invalid session")
            auth_session, user = row
            if auth_session.expires_at <= utcnow():
                # Clean up eagerly; the delete commits when the scope exits.
                await session.delete(auth_session)
                expired = True

        if expired:
            logger.info("auth_session_expired user_id=%s", user.id)
            raise AuthError("Session expired", error_code="session_expired")
        if user.status != "active":
            logger.info("auth_user_inactive user_id=%s status=%s", user.id, user.status)
            raise AuthError("Account is not active", error_code="account_inactive")
        return UserIdentity(user_id=str(user.id), email=user.email, name=user.name, role=user.role)


class LocalAuthenticator:
    """Fixed identity for local development (ALLOW_NO_AUTH=true)."""

    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id or config.LOCAL_USER_ID

    async def resolve(self, request: Request) -> UserIdentity:
        return UserIdentity(user_id=self.user_id, email="local@localhost", name="Local user")


_SESSION_AUTHENTICATOR = SessionAuthenticator()
_LOCAL_WARNED = False


def get_authenticator() -> Authenticator:
    global _LOCAL_WARNED
    if config.ALLOW_NO_AUTH:
        if config.ENV == "production" and not _LOCAL_WARNED:
            logger.warning("ALLOW_NO_AUTH is enabled in production; every request acts as the local user.")
            _LOCAL_WARNED = True
        return LocalAuthenticator()
    return _SESSION_AUTHENTICATOR


async def require_user(
    request: Request,
    authenticator: Authenticator = Depends(get_authenticator),
) -> UserIdentity:
    return await authenticator.resolve(request)

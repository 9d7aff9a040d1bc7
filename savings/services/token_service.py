"""
Token issuer — access/refresh pairs bound to a session.

Refresh tokens are single-use. When a pair is issued, the refresh token is
registered in the cache under `refresh:{user_id}:{sha256(token)}` with a TTL
of REFRESH_TOKEN_EXPIRE_DAYS. Rotation claims the registration by deleting
the key: the delete reports how many keys it removed, so of two concurrent
rotations with the same token exactly one sees 1 and proceeds.
"""

import uuid
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from savings.cache import SessionCache
from savings.clock import as_utc, utcnow
from savings.config import settings
from savings.exceptions import InvalidTokenError, SessionInvalidError
from savings.logging import get_logger
from savings.models.session import UserSession
from savings.security import (
    JWTError,
    create_access_token,
    create_refresh_token,
    decode_access_token,
    decode_refresh_token,
    token_fingerprint,
)
from savings.services import session_service

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: uuid.UUID
    expires_in: int
    token_type: str = "bearer"


def refresh_cache_key(user_id: uuid.UUID | str, refresh_token: str) -> str:
    return f"refresh:{user_id}:{token_fingerprint(refresh_token)}"


async def issue_tokens(cache: SessionCache, session: UserSession) -> TokenPair:
    """Mint a pair for a session and register the refresh token."""
    access_token = create_access_token(session.user_id, session.device_id, session.id)
    refresh_token = create_refresh_token(session.user_id, session.id)
    await cache.set(
        refresh_cache_key(session.user_id, refresh_token),
        str(session.id),
        settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
    )
    return TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        session_id=session.id,
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


def verify_access(token: str) -> dict:
    """
    Decode an access token.

    Raises:
        InvalidTokenError: Bad signature, expired, or a refresh token.
    """
    try:
        return decode_access_token(token)
    except JWTError:
        raise InvalidTokenError()


def verify_refresh(token: str) -> dict:
    try:
        return decode_refresh_token(token)
    except JWTError:
        raise InvalidTokenError("Invalid or expired refresh token")


async def rotate(
    db: AsyncSession,
    cache: SessionCache,
    refresh_token: str,
) -> TokenPair:
    """
    Exchange a registered refresh token for a new pair.

    The old refresh token is consumed whether or not rotation succeeds
    afterwards, so it can never be presented again.

    Raises:
        InvalidTokenError: Signature, expiry, or registration check failed.
        SessionInvalidError: The bound session was revoked or its refresh
            window has closed.
    """
    payload = verify_refresh(refresh_token)
    user_id = payload.get("sub")
    session_id = payload.get("session_id")
    if not user_id or not session_id:
        raise InvalidTokenError("Invalid or expired refresh token")

    claimed = await cache.delete(refresh_cache_key(user_id, refresh_token))
    if not claimed:
        logger.warning("refresh_token_reuse", user_id=user_id, session_id=session_id)
        raise InvalidTokenError("Refresh token is no longer valid")

    try:
        session_uuid = uuid.UUID(session_id)
    except ValueError:
        raise InvalidTokenError("Invalid or expired refresh token")

    session = await session_service.get_session(db, session_uuid)
    if (
        session is None
        or not session.is_active
        or str(session.user_id) != user_id
        or as_utc(session.refresh_expires_at) <= utcnow()
    ):
        raise SessionInvalidError()

    session = await session_service.extend_session(db, cache, session)
    tokens = await issue_tokens(cache, session)
    logger.info("tokens_rotated", session_id=session_id)
    return tokens

"""
Session store — durable login sessions with a write-through cache mirror.

The `sessions` table is authoritative. Each live session also has a cache
entry `session:{id}` holding {user_id, device_id, is_active} with a TTL
equal to the access-token lifetime, so the common case of "is this session
still alive?" is a single cache read.

Validity check:
  1. Cache hit  -> valid. The key only exists while the session is live.
  2. Cache miss -> read the row: valid iff is_active and expires_at > now.

Because a cache hit is trusted on its own, every revoke path deletes the
cache key in the same call that flips the durable flag. Flipping only the
row would leave the session usable until the cache TTL ran out.
"""

import json
import uuid
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from savings.cache import SessionCache
from savings.clock import as_utc, utcnow
from savings.config import settings
from savings.logging import get_logger
from savings.models.session import UserSession

logger = get_logger(__name__)


def session_cache_key(session_id: uuid.UUID | str) -> str:
    return f"session:{session_id}"


def _access_ttl_seconds() -> int:
    return settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60


async def _write_mirror(cache: SessionCache, session: UserSession) -> None:
    await cache.set(
        session_cache_key(session.id),
        json.dumps(
            {
                "user_id": str(session.user_id),
                "device_id": str(session.device_id),
                "is_active": True,
            }
        ),
        _access_ttl_seconds(),
    )


async def create_session(
    db: AsyncSession,
    cache: SessionCache,
    user_id: uuid.UUID,
    device_id: uuid.UUID,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> UserSession:
    """
    Insert an active session row and write its cache mirror.

    Args:
        user_id: The authenticated user.
        device_id: Primary key of the Device row the login came from.
    """
    now = utcnow()
    session = UserSession(
        user_id=user_id,
        device_id=device_id,
        ip_address=ip_address,
        user_agent=user_agent,
        is_active=True,
        issued_at=now,
        expires_at=now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        refresh_expires_at=now + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        last_used=now,
    )
    db.add(session)
    await db.flush()
    await _write_mirror(cache, session)
    logger.info("session_created", session_id=str(session.id), user_id=str(user_id))
    return session


async def extend_session(
    db: AsyncSession,
    cache: SessionCache,
    session: UserSession,
) -> UserSession:
    """Push both expiry windows forward (token rotation) and refresh the mirror."""
    now = utcnow()
    session.expires_at = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    session.refresh_expires_at = now + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
    session.last_used = now
    await db.flush()
    await _write_mirror(cache, session)
    return session


async def get_session(
    db: AsyncSession,
    session_id: uuid.UUID,
) -> UserSession | None:
    result = await db.execute(select(UserSession).where(UserSession.id == session_id))
    return result.scalar_one_or_none()


async def is_session_valid(
    db: AsyncSession,
    cache: SessionCache,
    session_id: uuid.UUID,
) -> bool:
    """Cache first, durable row on a miss."""
    if await cache.get(session_cache_key(session_id)) is not None:
        return True

    session = await get_session(db, session_id)
    if session is None:
        return False
    return session.is_active and as_utc(session.expires_at) > utcnow()


async def revoke_session(
    db: AsyncSession,
    cache: SessionCache,
    session_id: uuid.UUID,
    user_id: uuid.UUID | None = None,
) -> bool:
    """
    Deactivate one session and drop its cache mirror.

    Args:
        user_id: When given, only a session owned by this user is revoked.

    Returns:
        True if an active session was revoked.
    """
    stmt = (
        update(UserSession)
        .where(UserSession.id == session_id)
        .where(UserSession.is_active.is_(True))
        .values(is_active=False)
    )
    if user_id is not None:
        stmt = stmt.where(UserSession.user_id == user_id)
    result = await db.execute(stmt)

    # Only drop the mirror if the session is not somebody else's
    if result.rowcount or user_id is None:
        await cache.delete(session_cache_key(session_id))

    if result.rowcount:
        logger.info("session_revoked", session_id=str(session_id))
    return bool(result.rowcount)


async def revoke_all_sessions(
    db: AsyncSession,
    cache: SessionCache,
    user_id: uuid.UUID,
    except_session_id: uuid.UUID | None = None,
) -> int:
    """
    Deactivate every active session of a user, optionally keeping one.

    Returns:
        Number of sessions revoked.
    """
    query = (
        select(UserSession.id)
        .where(UserSession.user_id == user_id)
        .where(UserSession.is_active.is_(True))
    )
    if except_session_id is not None:
        query = query.where(UserSession.id != except_session_id)
    session_ids = list((await db.execute(query)).scalars().all())
    if not session_ids:
        return 0

    await db.execute(
        update(UserSession)
        .where(UserSession.id.in_(session_ids))
        .values(is_active=False)
    )
    await cache.delete(*(session_cache_key(sid) for sid in session_ids))
    logger.info("sessions_revoked", user_id=str(user_id), count=len(session_ids))
    return len(session_ids)


async def list_active_sessions(
    db: AsyncSession,
    user_id: uuid.UUID,
) -> list[UserSession]:
    """Active sessions whose refresh window is still open, newest first."""
    result = await db.execute(
        select(UserSession)
        .where(UserSession.user_id == user_id)
        .where(UserSession.is_active.is_(True))
        .where(UserSession.refresh_expires_at > utcnow())
        .order_by(UserSession.last_used.desc())
    )
    return list(result.scalars().all())

"""
FastAPI dependencies for authentication, authorization, and app services.

Dependency chain:

  get_current_principal (access token -> live session -> active User)
      └── get_current_user (Principal -> User)
            ├── require_client  [CLIENT role: savings endpoints]
            └── require_admin   [ADMIN role: audit and reversal endpoints]

A request is authenticated only if:
  1. The access token verifies (signature, expiry, "access" type)
  2. The session it names is still valid in the session store
     (cache mirror first, durable row on a miss)
  3. The user exists and is active

Revoking a session (logout, admin revoke) therefore ends access at once,
even though the access token itself has not expired.

The cache, job queue, and device-trust policy are created once in the app
lifespan and stored on app.state; get_cache/get_queue/get_device_policy
hand them to route handlers. get_queue wraps the queue so jobs enqueued
during a request are only released once the request's session commits.
"""

import uuid
from dataclasses import dataclass

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from savings.cache import SessionCache
from savings.database import get_db
from savings.exceptions import (
    InvalidTokenError,
    SessionInvalidError,
    UnauthorizedAccessError,
)
from savings.models.user import User, UserRole
from savings.services import session_service, token_service
from savings.services.device_service import DeviceTrustPolicy
from savings.services.queue_service import SessionJobBuffer


# OAuth2PasswordBearer reads "Authorization: Bearer <token>". tokenUrl is
# only used by the Swagger UI "Authorize" button.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_cache(request: Request) -> SessionCache:
    return request.app.state.cache


def get_queue(request: Request, db: AsyncSession = Depends(get_db)) -> SessionJobBuffer:
    """The app queue, holding this request's jobs until its session commits."""
    return SessionJobBuffer(request.app.state.queue, db)


def get_device_policy(request: Request) -> DeviceTrustPolicy:
    return request.app.state.device_policy


@dataclass
class Principal:
    """The authenticated caller: who, on which session, from which device."""
    user: User
    session_id: uuid.UUID
    device_id: uuid.UUID


async def get_current_principal(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
    cache: SessionCache = Depends(get_cache),
) -> Principal:
    """
    Resolve the caller from the bearer token.

    Raises:
        InvalidTokenError: Token is bad, expired, or names an unknown user.
        SessionInvalidError: The session was revoked or has expired.
    """
    payload = token_service.verify_access(token)
    try:
        user_id = uuid.UUID(payload["sub"])
        session_id = uuid.UUID(payload["session_id"])
        device_id = uuid.UUID(payload["device_id"])
    except (KeyError, TypeError, ValueError):
        raise InvalidTokenError()

    if not await session_service.is_session_valid(db, cache, session_id):
        raise SessionInvalidError()

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise InvalidTokenError("Could not validate credentials")

    return Principal(user=user, session_id=session_id, device_id=device_id)


async def get_current_user(
    principal: Principal = Depends(get_current_principal),
) -> User:
    return principal.user


async def require_client(
    user: User = Depends(get_current_user),
) -> User:
    """
    Require the CLIENT role.

    Admin accounts hold no savings account and are kept out of the money
    movement endpoints; they use /admin/* instead.
    """
    if user.role != UserRole.CLIENT:
        raise UnauthorizedAccessError(
            "Admin accounts cannot use savings endpoints. Use /admin/* instead."
        )
    return user


async def require_admin(
    user: User = Depends(get_current_user),
) -> User:
    """Require the ADMIN role. Regular clients receive 403."""
    if user.role != UserRole.ADMIN:
        raise UnauthorizedAccessError("Admin access required")
    return user

"""
Security utilities: password/PIN hashing, JWT tokens, and random codes.

This module centralizes all cryptographic operations so they're easy to
audit and update. Three concerns are handled here:

1. PASSWORD AND PIN HASHING (Argon2)
   - Passwords and transaction PINs are never stored in plaintext
   - passlib's CryptContext provides the Argon2id hashing and constant-time
     verification

2. JWT TOKENS (JSON Web Tokens)
   - Access tokens carry {sub, device_id, session_id} and live
     ACCESS_TOKEN_EXPIRE_MINUTES (default 15 min)
   - Refresh tokens carry {sub, session_id} and live
     REFRESH_TOKEN_EXPIRE_DAYS (default 7 days)
   - The two classes are signed with independent secrets, and each carries a
     "typ" claim so one can never be accepted in place of the other
   - Every token carries a random "jti", so two tokens minted in the same
     second for the same session are still distinct strings

3. RANDOM CODES
   - One-time codes and reference suffixes come from the `secrets` module
"""

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt  # noqa: F401  (JWTError re-exported for callers)
from passlib.context import CryptContext

from savings.config import settings


# ---------------------------------------------------------------------------
# 1. Password and PIN hashing (Argon2)
# ---------------------------------------------------------------------------

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def hash_password(plain_password: str) -> str:
    """
    Hash a plaintext password (or PIN) using Argon2id.

    Returns:
        An Argon2 hash string (e.g., "$argon2id$v=19$m=65536,t=3,p=4$...").
    """
    return pwd_context.hash(plain_password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plaintext password (or PIN) against a stored Argon2 hash."""
    return pwd_context.verify(plain_password, hashed_password)


# ---------------------------------------------------------------------------
# 2. JWT tokens
# ---------------------------------------------------------------------------


def _encode(claims: dict, secret: str, token_type: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    to_encode = claims.copy()
    to_encode.update(
        {
            "typ": token_type,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + expires_delta,
        }
    )
    return jwt.encode(to_encode, secret, algorithm=settings.ALGORITHM)


def _decode(token: str, secret: str, token_type: str) -> dict:
    payload = jwt.decode(token, secret, algorithms=[settings.ALGORITHM])
    if payload.get("typ") != token_type:
        raise JWTError(f"Expected a {token_type} token")
    return payload


def create_access_token(
    user_id: uuid.UUID,
    device_id: uuid.UUID,
    session_id: uuid.UUID,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a signed access token bound to one session on one device.

    Args:
        user_id: Subject of the token ("sub" claim).
        device_id: Primary key of the Device row used to log in.
        session_id: The session this token belongs to.
        expires_delta: Optional custom lifetime. Defaults to
                       ACCESS_TOKEN_EXPIRE_MINUTES from settings.
    """
    return _encode(
        {"sub": str(user_id), "device_id": str(device_id), "session_id": str(session_id)},
        settings.SECRET_KEY,
        ACCESS_TOKEN_TYPE,
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    )


def create_refresh_token(
    user_id: uuid.UUID,
    session_id: uuid.UUID,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed refresh token bound to a session (not to a device)."""
    return _encode(
        {"sub": str(user_id), "session_id": str(session_id)},
        settings.REFRESH_SECRET_KEY,
        REFRESH_TOKEN_TYPE,
        expires_delta or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
    )


def decode_access_token(token: str) -> dict:
    """
    Decode and verify an access token.

    Raises:
        JWTError: If the token is expired, tampered with, or not an access token.
    """
    return _decode(token, settings.SECRET_KEY, ACCESS_TOKEN_TYPE)


def decode_refresh_token(token: str) -> dict:
    """
    Decode and verify a refresh token.

    Raises:
        JWTError: If the token is expired, tampered with, or not a refresh token.
    """
    return _decode(token, settings.REFRESH_SECRET_KEY, REFRESH_TOKEN_TYPE)


def token_fingerprint(token: str) -> str:
    """SHA-256 of a token, used as a cache key instead of the raw token."""
    return hashlib.sha256(token.encode()).hexdigest()


# ---------------------------------------------------------------------------
# 3. Random codes
# ---------------------------------------------------------------------------


def generate_numeric_code(length: int) -> str:
    """Uniformly random numeric code without a leading zero (e.g. 6 digits)."""
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


def generate_reset_token() -> str:
    """Opaque password-reset token; only its fingerprint is stored."""
    return secrets.token_urlsafe(32)

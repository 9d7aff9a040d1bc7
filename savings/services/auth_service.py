"""
Authentication service — registration, login, and step-up security flows.

This module contains the auth logic, separated from HTTP concerns. The
routers call these functions and translate the results into responses.

Registration flow:
  1. Reject a taken email
  2. Create User (CLIENT) + savings Account in one database transaction
  3. Register the installation as an unverified Device and open a Session
  4. Issue an access/refresh pair; queue a welcome email and an
     EMAIL_VERIFICATION code

Login flow (two phases):
  1. Lockout check, then password check. Failures are counted per email
     in the cache (LOGIN_ATTEMPT_WINDOW_SECONDS). Reaching
     LOGIN_MAX_ATTEMPTS deactivates the user.
  2. Without a code: check the device would be accepted, send a LOGIN
     code, and report `requires_otc`.
  3. With a code: redeem it, apply the device policy, open a Session,
     issue tokens, queue the login notification.

Password recovery:
  forgot_password mails a single-use reset token valid for
  PASSWORD_RESET_EXPIRE_MINUTES; only its SHA-256 is stored. reset_password
  redeems it with one conditional UPDATE, reactivates a locked-out user,
  clears the login-attempt counter, and revokes every session, so all
  outstanding access and refresh tokens stop working.

Security notes:
  - Same InvalidCredentialsError for "wrong password" and "email not found"
    to prevent user enumeration
  - Codes and PINs are never logged or returned in responses
"""

import uuid
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from savings.cache import SessionCache
from savings.clock import utcnow
from savings.config import settings
from savings.exceptions import (
    AccountLockedError,
    DeviceNotFoundError,
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidOtcError,
    InvalidPinError,
    InvalidResetTokenError,
    PinNotSetError,
)
from savings.logging import get_logger
from savings.models.device import Device
from savings.models.one_time_code import OtcPurpose
from savings.models.user import User, UserRole
from savings.security import (
    generate_reset_token,
    hash_password,
    token_fingerprint,
    verify_password,
)
from savings.services import (
    account_service,
    device_service,
    otc_service,
    session_service,
    token_service,
)
from savings.services.device_service import DeviceMetadata, DeviceTrustPolicy
from savings.services.notification_service import (
    EMAIL_JOB,
    LOGIN_JOB,
    PASSWORD_CHANGED_JOB,
)
from savings.services.queue_service import JobSink
from savings.services.token_service import TokenPair

logger = get_logger(__name__)


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair | None = None
    requires_otc: bool = False


def login_attempts_key(email: str) -> str:
    return f"login_attempts:{email}"


def _normalize_email(email: str) -> str:
    return email.strip().lower()


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == _normalize_email(email)))
    return result.scalar_one_or_none()


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def _open_session(
    db: AsyncSession,
    cache: SessionCache,
    user: User,
    device: Device,
    metadata: DeviceMetadata,
) -> TokenPair:
    session = await session_service.create_session(
        db,
        cache,
        user.id,
        device.id,
        ip_address=metadata.ip_address,
        user_agent=metadata.user_agent,
    )
    return await token_service.issue_tokens(cache, session)


async def register(
    db: AsyncSession,
    cache: SessionCache,
    queue: JobSink,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    device_id: str,
    phone: str | None = None,
    metadata: DeviceMetadata | None = None,
) -> tuple[User, TokenPair]:
    """
    Register a new client with a savings account and log them in.

    Returns:
        Tuple of (User instance, token pair for the new session).

    Raises:
        DuplicateEmailError: If the email is already registered.
    """
    email = _normalize_email(email)
    if await get_user_by_email(db, email) is not None:
        raise DuplicateEmailError(email)

    user = User(
        email=email,
        hashed_password=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        phone=phone,
        role=UserRole.CLIENT,
    )
    db.add(user)
    # Flush to get user.id assigned for the foreign keys below
    await db.flush()

    await account_service.create_account(db, user.id)

    metadata = metadata or DeviceMetadata()
    device = await device_service.register_device(db, user.id, device_id, metadata)
    tokens = await _open_session(db, cache, user, device, metadata)

    queue.enqueue(
        EMAIL_JOB,
        {"email": user.email, "template": "welcome_email", "data": {"first_name": first_name}},
    )
    await otc_service.generate_code(db, queue, user, OtcPurpose.EMAIL_VERIFICATION)

    logger.info("user_registered", user_id=str(user.id))
    return user, tokens


async def _record_failed_login(
    db: AsyncSession,
    cache: SessionCache,
    user: User,
    email: str,
) -> None:
    attempts = await cache.incr(
        login_attempts_key(email), settings.LOGIN_ATTEMPT_WINDOW_SECONDS
    )
    logger.warning("login_failed", user_id=str(user.id), attempts=attempts)
    if attempts >= settings.LOGIN_MAX_ATTEMPTS:
        await db.execute(update(User).where(User.id == user.id).values(is_active=False))
        logger.warning("user_deactivated", user_id=str(user.id), attempts=attempts)
        raise AccountLockedError(
            "Account has been deactivated due to multiple failed login attempts"
        )


async def login(
    db: AsyncSession,
    cache: SessionCache,
    queue: JobSink,
    policy: DeviceTrustPolicy,
    email: str,
    password: str,
    device_id: str,
    otc: str | None = None,
    metadata: DeviceMetadata | None = None,
) -> LoginResult:
    """
    Authenticate a user. See the module docstring for the two phases.

    Raises:
        AccountLockedError: Too many failed attempts, or user deactivated.
        InvalidCredentialsError: Email unknown or password wrong.
        UntrustedDeviceError: Device policy rejected the device.
        InvalidOtcError: The supplied LOGIN code is wrong, used, or expired.
    """
    email = _normalize_email(email)
    user = await get_user_by_email(db, email)

    if user is not None:
        attempts = await cache.get(login_attempts_key(email))
        if attempts is not None and int(attempts) >= settings.LOGIN_MAX_ATTEMPTS:
            raise AccountLockedError()

    if user is None or not verify_password(password, user.hashed_password):
        if user is not None:
            await _record_failed_login(db, cache, user, email)
        raise InvalidCredentialsError()

    if not user.is_active:
        raise AccountLockedError("Account deactivated, please contact support")

    await cache.delete(login_attempts_key(email))

    if otc is None:
        await device_service.check_login_device(db, user, device_id, policy)
        await otc_service.generate_code(db, queue, user, OtcPurpose.LOGIN)
        return LoginResult(user=user, requires_otc=True)

    if not await otc_service.verify_code(db, user, otc, OtcPurpose.LOGIN):
        raise InvalidOtcError()

    metadata = metadata or DeviceMetadata()
    device = await device_service.authorize_login_device(
        db, user, device_id, policy, metadata
    )
    tokens = await _open_session(db, cache, user, device, metadata)

    queue.enqueue(
        LOGIN_JOB,
        {
            "user_id": str(user.id),
            "ip_address": metadata.ip_address,
            "device_name": device.device_name,
        },
    )
    logger.info("login_succeeded", user_id=str(user.id), session_id=str(tokens.session_id))
    return LoginResult(user=user, tokens=tokens)


async def refresh(
    db: AsyncSession,
    cache: SessionCache,
    refresh_token: str,
) -> TokenPair:
    return await token_service.rotate(db, cache, refresh_token)


async def logout(
    db: AsyncSession,
    cache: SessionCache,
    session_id: uuid.UUID,
) -> None:
    await session_service.revoke_session(db, cache, session_id)


async def verify_email(db: AsyncSession, user: User, code: str) -> User:
    """
    Redeem an EMAIL_VERIFICATION code and mark the user verified.

    Raises:
        InvalidOtcError: The code is wrong, used, or expired.
    """
    if not await otc_service.verify_code(db, user, code, OtcPurpose.EMAIL_VERIFICATION):
        raise InvalidOtcError()
    user.is_verified = True
    await db.flush()
    logger.info("email_verified", user_id=str(user.id))
    return user


async def resend_verification(db: AsyncSession, queue: JobSink, user: User) -> bool:
    """Send a new EMAIL_VERIFICATION code. False if already verified."""
    if user.is_verified:
        return False
    await otc_service.generate_code(db, queue, user, OtcPurpose.EMAIL_VERIFICATION)
    return True


async def request_otc(
    db: AsyncSession,
    queue: JobSink,
    user: User,
    purpose: OtcPurpose,
) -> None:
    """Generate and deliver a code; the code itself never leaves the server."""
    await otc_service.generate_code(db, queue, user, purpose)


async def verify_otc(
    db: AsyncSession,
    user: User,
    code: str,
    purpose: OtcPurpose,
) -> None:
    if not await otc_service.verify_code(db, user, code, purpose):
        raise InvalidOtcError()


async def verify_device_with_code(
    db: AsyncSession,
    user: User,
    device_id: str,
    code: str,
) -> Device:
    """
    Trust a device after redeeming a DEVICE_VERIFICATION code.

    Raises:
        InvalidOtcError: The code is wrong, used, or expired.
        DeviceNotFoundError: The user has no such device.
    """
    device = await device_service.get_device(db, user.id, device_id)
    if device is None:
        # Checked before redeeming so a wrong device_id doesn't burn the code
        raise DeviceNotFoundError(device_id)
    await verify_otc(db, user, code, OtcPurpose.DEVICE_VERIFICATION)
    return await device_service.verify_device(db, user.id, device_id)


async def set_transaction_pin(
    db: AsyncSession,
    user: User,
    pin: str,
    current_password: str,
) -> None:
    """
    Set or replace the transaction PIN (4-6 digits).

    Raises:
        InvalidCredentialsError: current_password is wrong.
        InvalidPinError: PIN is not 4-6 digits.
    """
    if not verify_password(current_password, user.hashed_password):
        raise InvalidCredentialsError("Current password is incorrect")
    if not (pin.isdigit() and 4 <= len(pin) <= 6):
        raise InvalidPinError("PIN must be 4 to 6 digits")

    user.transaction_pin_hash = hash_password(pin)
    await db.flush()
    logger.info("transaction_pin_set", user_id=str(user.id))


def verify_transaction_pin(user: User, pin: str) -> None:
    """
    Raises:
        PinNotSetError: The user has no PIN.
        InvalidPinError: The PIN does not match.
    """
    if user.transaction_pin_hash is None:
        raise PinNotSetError()
    if not verify_password(pin, user.transaction_pin_hash):
        raise InvalidPinError()


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------

async def forgot_password(db: AsyncSession, queue: JobSink, email: str) -> None:
    """
    Mail a password-reset token.

    Unknown emails return silently so the endpoint can't be used to discover
    registered accounts. A new request replaces any earlier token.
    """
    user = await get_user_by_email(db, email)
    if user is None:
        logger.info("password_reset_unknown_email")
        return

    token = generate_reset_token()
    user.password_reset_token_hash = token_fingerprint(token)
    user.password_reset_expires = utcnow() + timedelta(
        minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES
    )
    await db.flush()

    queue.enqueue(
        EMAIL_JOB,
        {
            "email": user.email,
            "template": "password_reset",
            "data": {
                "first_name": user.first_name,
                "token": token,
                "minutes": settings.PASSWORD_RESET_EXPIRE_MINUTES,
            },
        },
    )
    logger.info("password_reset_requested", user_id=str(user.id))


async def reset_password(
    db: AsyncSession,
    cache: SessionCache,
    token: str,
    new_password: str,
) -> int:
    """
    Set a new password with a reset token and sign the user out everywhere.

    Returns:
        Number of sessions revoked.

    Raises:
        InvalidResetTokenError: The token is unknown, used, or expired.
    """
    result = await db.execute(
        update(User)
        .where(User.password_reset_token_hash == token_fingerprint(token))
        .where(User.password_reset_expires > utcnow())
        .values(
            hashed_password=hash_password(new_password),
            password_reset_token_hash=None,
            password_reset_expires=None,
            is_active=True,
        )
        .returning(User.id, User.email)
        .execution_options(synchronize_session=False)
    )
    row = result.one_or_none()
    if row is None:
        raise InvalidResetTokenError()

    user_id, email = row
    await cache.delete(login_attempts_key(email))
    revoked = await session_service.revoke_all_sessions(db, cache, user_id)
    logger.info("password_reset", user_id=str(user_id), sessions_revoked=revoked)
    return revoked


async def change_password(
    db: AsyncSession,
    queue: JobSink,
    user: User,
    current_password: str,
    new_password: str,
    ip_address: str | None = None,
) -> None:
    """
    Replace the password of a signed-in user.

    Raises:
        InvalidCredentialsError: current_password is wrong.
    """
    if not verify_password(current_password, user.hashed_password):
        raise InvalidCredentialsError("Current password is incorrect")

    user.hashed_password = hash_password(new_password)
    await db.flush()

    queue.enqueue(
        PASSWORD_CHANGED_JOB,
        {"user_id": str(user.id), "ip_address": ip_address},
    )
    logger.info("password_changed", user_id=str(user.id))

"""
Authentication router — registration, login, tokens, devices, and sessions.

Endpoints:
  POST   /auth/register                 — Register a client and get tokens
  POST   /auth/login                    — Two-phase login (password, then code)
  POST   /auth/refresh                  — Rotate a refresh token
  POST   /auth/logout                   — Revoke the current session
  GET    /auth/me                       — The authenticated user
  POST   /auth/verify-email             — Redeem an EMAIL_VERIFICATION code
  POST   /auth/resend-verification      — Send a new verification code
  GET    /auth/devices                  — List my devices
  POST   /auth/devices/verify           — Trust a device with a code
  GET    /auth/sessions                 — List my active sessions
  DELETE /auth/sessions/{session_id}    — Revoke one of my sessions
  POST   /auth/sessions/revoke-others   — Revoke all but the current session
  POST   /auth/forgot-password          — E-mail a password-reset token
  POST   /auth/reset-password           — Set a new password with the token
  POST   /auth/change-password          — Change password (signed in)

Security audit notes:
  - Plaintext passwords, PINs, and one-time codes exist only in memory
    during request processing and are never logged.
  - Tokens appear only in response bodies, which are not logged.
  - One-time codes are delivered out of band (e-mail job) and never
    returned in a response.
"""

import uuid

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from savings.cache import SessionCache
from savings.database import get_db
from savings.dependencies import (
    Principal,
    get_cache,
    get_current_principal,
    get_current_user,
    get_device_policy,
    get_queue,
)
from savings.exceptions import SessionNotFoundError
from savings.models.user import User
from savings.schemas.auth import (
    ChangePasswordRequest,
    DeviceResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    SessionResponse,
    TokenResponse,
    VerifyDeviceRequest,
    VerifyEmailRequest,
)
from savings.schemas.user import UserResponse
from savings.services import (
    account_service,
    auth_service,
    device_service,
    session_service,
)
from savings.services.device_service import DeviceMetadata, DeviceTrustPolicy
from savings.services.queue_service import JobSink
from savings.services.token_service import TokenPair

router = APIRouter()


def _metadata(http_request: Request, device_name: str | None = None) -> DeviceMetadata:
    return DeviceMetadata.from_user_agent(
        http_request.headers.get("user-agent"),
        ip_address=http_request.client.host if http_request.client else None,
        device_name=device_name,
    )


def _tokens(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        session_id=pair.session_id,
    )


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new client",
)
async def register(
    request: RegisterRequest,
    http_request: Request,
    db: AsyncSession = Depends(get_db),
    cache: SessionCache = Depends(get_cache),
    queue: JobSink = Depends(get_queue),
):
    """
    Register a savings client.

    Creates the user, a savings account, and an (unverified) device record
    for the installation, and logs the user in on it. A welcome e-mail and
    an e-mail verification code are sent.

    Logging in again from this device later requires verifying it first
    (POST /auth/devices/verify with a DEVICE_VERIFICATION code).
    """
    user, tokens = await auth_service.register(
        db=db,
        cache=cache,
        queue=queue,
        email=request.email,
        password=request.password,
        first_name=request.first_name,
        last_name=request.last_name,
        phone=request.phone,
        device_id=request.device_id,
        metadata=_metadata(http_request, request.device_name),
    )
    account = await account_service.get_account_for_user(db, user.id)

    return RegisterResponse(
        user_id=user.id,
        email=user.email,
        role=user.role.value,
        account_number=account.account_number,
        tokens=_tokens(tokens),
    )


@router.post(
    "/login",
    response_model=LoginResponse,
    summary="Log in (password, then one-time code)",
)
async def login(
    request: LoginRequest,
    http_request: Request,
    db: AsyncSession = Depends(get_db),
    cache: SessionCache = Depends(get_cache),
    queue: JobSink = Depends(get_queue),
    policy: DeviceTrustPolicy = Depends(get_device_policy),
):
    """
    Authenticate with email, password, and device.

    Without `otc`, a LOGIN code is e-mailed and the response has
    `requires_otc: true`. Repeat the request with the code to receive
    tokens. Clients may only log in from verified devices.

    Five failed password attempts within 15 minutes deactivate the account.
    """
    result = await auth_service.login(
        db=db,
        cache=cache,
        queue=queue,
        policy=policy,
        email=request.email,
        password=request.password,
        device_id=request.device_id,
        otc=request.otc,
        metadata=_metadata(http_request, request.device_name),
    )
    return LoginResponse(
        requires_otc=result.requires_otc,
        user_id=result.user.id,
        tokens=_tokens(result.tokens) if result.tokens else None,
    )


@router.post(
    "/refresh",
    response_model=TokenResponse,
    summary="Exchange a refresh token for a new pair",
)
async def refresh(
    request: RefreshRequest,
    db: AsyncSession = Depends(get_db),
    cache: SessionCache = Depends(get_cache),
):
    """Each refresh token can be used once; the response carries its replacement."""
    pair = await auth_service.refresh(db, cache, request.refresh_token)
    return _tokens(pair)


@router.post(
    "/logout",
    response_model=MessageResponse,
    summary="Revoke the current session",
)
async def logout(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    cache: SessionCache = Depends(get_cache),
):
    await auth_service.logout(db, cache, principal.session_id)
    return MessageResponse(message="Logged out")


@router.get("/me", response_model=UserResponse, summary="Current user")
async def me(user: User = Depends(get_current_user)):
    return user


@router.post(
    "/verify-email",
    response_model=UserResponse,
    summary="Verify the e-mail address with a code",
)
async def verify_email(
    request: VerifyEmailRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await auth_service.verify_email(db, user, request.code)


@router.post(
    "/resend-verification",
    response_model=MessageResponse,
    summary="Send a new e-mail verification code",
)
async def resend_verification(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    queue: JobSink = Depends(get_queue),
):
    if not await auth_service.resend_verification(db, queue, user):
        return MessageResponse(message="Email is already verified")
    return MessageResponse(message="Verification code sent")


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------

@router.get(
    "/devices",
    response_model=list[DeviceResponse],
    summary="List my devices",
)
async def list_devices(
    is_verified: bool | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await device_service.list_devices(db, user.id, is_verified=is_verified)


@router.post(
    "/devices/verify",
    response_model=DeviceResponse,
    summary="Trust a device",
)
async def verify_device(
    request: VerifyDeviceRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Mark one of my devices as trusted.

    Requires a DEVICE_VERIFICATION code (POST /security/otc/request).
    """
    return await auth_service.verify_device_with_code(
        db, user, request.device_id, request.code
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@router.get(
    "/sessions",
    response_model=list[SessionResponse],
    summary="List my active sessions",
)
async def list_sessions(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    sessions = await session_service.list_active_sessions(db, principal.user.id)
    return [
        SessionResponse.model_validate(s).model_copy(
            update={"is_current": s.id == principal.session_id}
        )
        for s in sessions
    ]


@router.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Revoke one of my sessions",
)
async def revoke_session(
    session_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    cache: SessionCache = Depends(get_cache),
):
    revoked = await session_service.revoke_session(
        db, cache, session_id, user_id=principal.user.id
    )
    if not revoked:
        raise SessionNotFoundError(session_id)


@router.post(
    "/sessions/revoke-others",
    summary="Revoke every session except the current one",
)
async def revoke_other_sessions(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    cache: SessionCache = Depends(get_cache),
):
    count = await session_service.revoke_all_sessions(
        db, cache, principal.user.id, except_session_id=principal.session_id
    )
    return {"revoked": count}


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------

@router.post(
    "/forgot-password",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="E-mail a password-reset token",
)
async def forgot_password(
    request: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_db),
    queue: JobSink = Depends(get_queue),
):
    """Same response whether or not the email is registered."""
    await auth_service.forgot_password(db, queue, request.email)
    return MessageResponse(
        message="If the email is registered, a reset token has been sent"
    )


@router.post(
    "/reset-password",
    response_model=MessageResponse,
    summary="Set a new password with a reset token",
)
async def reset_password(
    request: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
    cache: SessionCache = Depends(get_cache),
):
    """
    Redeem a reset token. Every session is signed out, and an account
    locked by failed logins is reactivated.
    """
    await auth_service.reset_password(db, cache, request.token, request.new_password)
    return MessageResponse(message="Password has been reset, please log in again")


@router.post(
    "/change-password",
    response_model=MessageResponse,
    summary="Change my password",
)
async def change_password(
    request: ChangePasswordRequest,
    http_request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    queue: JobSink = Depends(get_queue),
):
    await auth_service.change_password(
        db,
        queue,
        user,
        request.current_password,
        request.new_password,
        ip_address=http_request.client.host if http_request.client else None,
    )
    return MessageResponse(message="Password changed")

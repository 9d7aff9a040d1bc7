"""
Security router — one-time codes and the transaction PIN.

Endpoints:
  POST /security/otc/request  — E-mail a code for a purpose
  POST /security/otc/verify   — Redeem a code
  POST /security/pin          — Set or change the transaction PIN
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from savings.database import get_db
from savings.dependencies import get_current_user, get_queue
from savings.models.user import User
from savings.schemas.auth import MessageResponse
from savings.schemas.security import (
    OtcRequest,
    OtcVerifyRequest,
    SetPinRequest,
    VerifiedResponse,
)
from savings.services import auth_service
from savings.services.queue_service import JobSink

router = APIRouter()


@router.post(
    "/otc/request",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Request a one-time code",
)
async def request_otc(
    request: OtcRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    queue: JobSink = Depends(get_queue),
):
    """The code is e-mailed; it is valid for 10 minutes and for one use."""
    await auth_service.request_otc(db, queue, user, request.purpose)
    return MessageResponse(message="Code sent")


@router.post(
    "/otc/verify",
    response_model=VerifiedResponse,
    summary="Redeem a one-time code",
)
async def verify_otc(
    request: OtcVerifyRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await auth_service.verify_otc(db, user, request.code, request.purpose)
    return VerifiedResponse()


@router.post(
    "/pin",
    response_model=MessageResponse,
    summary="Set the transaction PIN",
)
async def set_pin(
    request: SetPinRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Set or replace the 4-6 digit PIN.

    Once a PIN is set, deposits and withdrawals at or above the confirmation
    threshold are held PENDING until confirmed with it.
    """
    await auth_service.set_transaction_pin(
        db, user, request.pin, request.current_password
    )
    return MessageResponse(message="Transaction PIN set")

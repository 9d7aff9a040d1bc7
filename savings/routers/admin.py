"""
Admin router — audit, reversal, and session control.

All endpoints require the ADMIN role.

Endpoints:
  GET  /admin/transactions                       — List ALL transactions
  GET  /admin/transactions/{transaction_id}      — Get any transaction by ID
  POST /admin/reverse/{transaction_id}           — Reverse a completed transaction
  POST /admin/users/{user_id}/sessions/revoke    — Revoke every session of a user

By consolidating all admin routes in one router, we avoid route-ordering
conflicts that arise when multiple routers share a prefix and have
overlapping parameterized paths.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from savings.cache import SessionCache
from savings.database import get_db
from savings.dependencies import get_cache, get_queue, require_admin
from savings.models.transaction import TransactionStatus, TransactionType
from savings.models.user import User
from savings.schemas.transaction import (
    ReversalResponse,
    ReverseRequest,
    TransactionResponse,
)
from savings.services import ledger_service, session_service
from savings.services.queue_service import JobSink

router = APIRouter()


@router.get(
    "/transactions",
    response_model=list[TransactionResponse],
    summary="[Admin] List all transactions",
)
async def admin_list_transactions(
    status: TransactionStatus | None = Query(None, description="Filter by status"),
    type: TransactionType | None = Query(None, description="Filter by type"),
    account_id: uuid.UUID | None = Query(None, description="Filter by account"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    List transactions across all accounts, newest first.

    This provides a complete audit trail of every balance movement.
    """
    return await ledger_service.admin_list_transactions(
        db,
        status=status,
        txn_type=type,
        account_id=account_id,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/transactions/{transaction_id}",
    response_model=TransactionResponse,
    summary="[Admin] Get any transaction",
)
async def admin_get_transaction(
    transaction_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await ledger_service.admin_get_transaction(db, transaction_id)


@router.post(
    "/reverse/{transaction_id}",
    response_model=ReversalResponse,
    summary="[Admin] Reverse a completed transaction",
)
async def admin_reverse_transaction(
    transaction_id: uuid.UUID,
    request: ReverseRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    queue: JobSink = Depends(get_queue),
):
    """
    Undo a COMPLETED deposit or withdrawal.

    The original is marked REVERSED with the admin, time, and reason, and
    a REVERSAL transaction applies the inverse amount. A transaction can be
    reversed only once, and reversals themselves cannot be reversed.
    """
    original, reversal = await ledger_service.reverse_transaction(
        db, queue, admin, transaction_id, request.reason
    )
    return ReversalResponse(
        original=TransactionResponse.model_validate(original),
        reversal=TransactionResponse.model_validate(reversal),
    )


@router.post(
    "/users/{user_id}/sessions/revoke",
    summary="[Admin] Revoke every session of a user",
)
async def admin_revoke_user_sessions(
    user_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: SessionCache = Depends(get_cache),
):
    count = await session_service.revoke_all_sessions(db, cache, user_id)
    return {"revoked": count}

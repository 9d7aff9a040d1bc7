"""
Savings router — deposits, withdrawals, and transaction history.

All endpoints require the CLIENT role and act on the caller's own savings
account.

Endpoints:
  POST /savings/deposit                 — Deposit (may be held PENDING)
  POST /savings/withdraw                — Withdraw (may be held PENDING)
  POST /savings/confirm/{id}            — Confirm a PENDING transaction with the PIN
  POST /savings/cancel/{id}             — Cancel a PENDING transaction
  GET  /savings/balance                 — Cached and recomputed balance
  GET  /savings/transactions            — Paginated history (with filters)
  GET  /savings/transactions/{id}       — A single transaction
"""

import math
import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from savings.database import get_db
from savings.dependencies import get_queue, require_client
from savings.models.transaction import TransactionStatus, TransactionType
from savings.models.user import User
from savings.schemas.transaction import (
    AmountRequest,
    BalanceResponse,
    ConfirmRequest,
    TransactionPage,
    TransactionResponse,
)
from savings.services import account_service, ledger_service
from savings.services.queue_service import JobSink

router = APIRouter()


@router.post(
    "/deposit",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Deposit into my savings account",
)
async def deposit(
    request: AmountRequest,
    user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    queue: JobSink = Depends(get_queue),
):
    """
    Deposit money. All amounts are in **integer cents**.

    With a transaction PIN set, amounts at or above the confirmation
    threshold are returned with status PENDING and must be confirmed
    within 20 minutes.
    """
    return await ledger_service.deposit(
        db, queue, user, request.amount_cents, request.description
    )


@router.post(
    "/withdraw",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Withdraw from my savings account",
)
async def withdraw(
    request: AmountRequest,
    user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    queue: JobSink = Depends(get_queue),
):
    """Withdrawals exceeding the balance are rejected with 422 and nothing is recorded."""
    return await ledger_service.withdraw(
        db, queue, user, request.amount_cents, request.description
    )


@router.post(
    "/confirm/{transaction_id}",
    response_model=TransactionResponse,
    summary="Confirm a pending transaction",
)
async def confirm(
    transaction_id: uuid.UUID,
    request: ConfirmRequest,
    user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
    queue: JobSink = Depends(get_queue),
):
    return await ledger_service.confirm_transaction(
        db, queue, user, transaction_id, request.pin
    )


@router.post(
    "/cancel/{transaction_id}",
    response_model=TransactionResponse,
    summary="Cancel a pending transaction",
)
async def cancel(
    transaction_id: uuid.UUID,
    user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    return await ledger_service.cancel_transaction(db, user, transaction_id)


@router.get(
    "/balance",
    response_model=BalanceResponse,
    summary="Check my balance",
)
async def get_balance(
    user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    """
    Return the stored balance and the balance recomputed from transactions.

    `match: false` indicates a ledger integrity problem.
    """
    account = await account_service.get_account_for_user(db, user.id)
    return await account_service.get_balance(db, account)


@router.get(
    "/transactions",
    response_model=TransactionPage,
    summary="My transaction history",
)
async def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: TransactionStatus | None = Query(None, description="Filter by status"),
    type: TransactionType | None = Query(None, description="Filter by type"),
    user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    items, total = await ledger_service.get_transaction_history(
        db, user, page=page, limit=limit, status=status, txn_type=type
    )
    return TransactionPage(
        items=[TransactionResponse.model_validate(t) for t in items],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total else 0,
    )


@router.get(
    "/transactions/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get one of my transactions",
)
async def get_transaction(
    transaction_id: uuid.UUID,
    user: User = Depends(require_client),
    db: AsyncSession = Depends(get_db),
):
    return await ledger_service.get_transaction_for_user(db, user, transaction_id)

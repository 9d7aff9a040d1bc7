"""
Account service — savings account creation, lookup, and balance checks.

This module handles:
  - Account creation at registration (unique 16-digit account number)
  - Resolving a user's active account
  - Balance verification (cached vs. computed from transaction rows)

The balance itself is never changed here; that belongs to ledger_service.
"""

import random
import string
import uuid

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from savings.config import settings
from savings.exceptions import AccountNotFoundError
from savings.models.account import Account
from savings.models.transaction import APPLIED_STATUSES, Direction, Transaction


def _generate_account_number() -> str:
    """Bank identifier followed by 12 random digits (16 digits total)."""
    digits = "".join(random.choices(string.digits, k=16 - len(settings.BANK_IDENTIFIER)))
    return f"{settings.BANK_IDENTIFIER}{digits}"


def is_valid_account_number(account_number: str) -> bool:
    return (
        len(account_number) == 16
        and account_number.isdigit()
        and account_number.startswith(settings.BANK_IDENTIFIER)
    )


async def create_account(db: AsyncSession, user_id: uuid.UUID) -> Account:
    """
    Create the savings account for a newly registered user.

    Balance starts at 0 cents.
    """
    for _ in range(10):
        account_number = _generate_account_number()
        existing = await db.execute(
            select(Account).where(Account.account_number == account_number)
        )
        if existing.scalar_one_or_none() is None:
            break
    else:
        raise RuntimeError("Failed to generate a unique account number")

    account = Account(
        user_id=user_id,
        account_type="savings",
        account_number=account_number,
    )
    db.add(account)
    await db.flush()
    return account


async def get_account_for_user(db: AsyncSession, user_id: uuid.UUID) -> Account:
    """
    Get the active savings account owned by a user.

    Raises:
        AccountNotFoundError: If the user has no active account.
    """
    result = await db.execute(
        select(Account)
        .where(Account.user_id == user_id)
        .where(Account.is_active.is_(True))
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError()
    return account


async def get_account(db: AsyncSession, account_id: uuid.UUID) -> Account:
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFoundError(account_id)
    return account


async def compute_balance_from_transactions(
    db: AsyncSession,
    account_id: uuid.UUID,
) -> int:
    """
    Recompute the balance from transaction rows.

    Every COMPLETED or REVERSED row stands for a balance mutation that was
    applied, so the balance is their signed sum. A REVERSED original and its
    REVERSAL row cancel each other out.
    """
    signed = case(
        (Transaction.direction == Direction.CREDIT, Transaction.amount_cents),
        else_=-Transaction.amount_cents,
    )
    result = await db.execute(
        select(func.coalesce(func.sum(signed), 0))
        .where(Transaction.account_id == account_id)
        .where(Transaction.status.in_(APPLIED_STATUSES))
    )
    return int(result.scalar())


async def get_balance(db: AsyncSession, account: Account) -> dict:
    """
    Cached and recomputed balance of an account.

    A `match` of False indicates a ledger integrity problem.
    """
    # The ledger updates balances with SQL expressions; reload the row
    await db.refresh(account)
    computed_balance_cents = await compute_balance_from_transactions(db, account.id)
    return {
        "account_id": account.id,
        "account_number": account.account_number,
        "balance_cents": account.balance_cents,
        "computed_balance_cents": computed_balance_cents,
        "match": account.balance_cents == computed_balance_cents,
    }

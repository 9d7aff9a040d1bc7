"""
Ledger service — balance mutation and the transaction state machine.

THIS IS THE MOST CRITICAL FILE IN THE PROJECT. It handles:
  - Deposits and withdrawals (immediate or PIN-gated PENDING)
  - Confirming and cancelling PENDING transactions
  - Admin reversals
  - The bulk expiry sweep of stale PENDING transactions

Atomic balance changes:
  A balance is never read, checked in Python, and written back. Every
  change is one conditional UPDATE executed by the database:

      UPDATE accounts SET balance_cents = balance_cents - :amount
       WHERE id = :id AND balance_cents >= :amount
   RETURNING balance_cents

  No row returned means the check failed and nothing changed. Of two
  concurrent withdrawals that together exceed the balance, exactly one
  matches. Deposits use `balance_cents + :amount <= MAX_BALANCE_CENTS`.

Status changes:
  Every transition is a compare-and-set on the current status
  (UPDATE ... WHERE status = 'PENDING'), so a second confirm of the same
  transaction can't apply its amount twice. When the balance moved but the
  status CAS loses a race, the balance change is undone in the same
  database transaction before the error is raised.

Pending policy:
  A request is created PENDING when the user has a transaction PIN and
  amount_cents >= PENDING_THRESHOLD_CENTS. PENDING rows never touch the
  balance; they are checked at creation for an early answer and checked
  again, atomically, on confirm. They expire PENDING_EXPIRE_MINUTES after
  creation.

Admin read-only functions:
  Functions prefixed with `admin_` read all transactions without ownership
  scoping. They are called from admin-only endpoints.
"""

import secrets
import time
import uuid
from datetime import timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from savings.clock import as_utc, utcnow
from savings.config import settings
from savings.exceptions import (
    AlreadyReversedError,
    BalanceLimitExceededError,
    InsufficientBalanceError,
    InvalidAmountError,
    TransactionExpiredError,
    TransactionNotFoundError,
    TransactionNotPendingError,
    TransactionNotReversibleError,
    UnauthorizedAccessError,
)
from savings.logging import get_logger
from savings.models.account import Account
from savings.models.transaction import (
    Direction,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from savings.models.user import User
from savings.services import account_service, auth_service
from savings.services.notification_service import (
    DEPOSIT_JOB,
    INSUFFICIENT_BALANCE_JOB,
    PENDING_TRANSACTION_JOB,
    REVERSAL_JOB,
    WITHDRAWAL_JOB,
)
from savings.services.queue_service import JobSink

logger = get_logger(__name__)


TYPE_DIRECTION = {
    TransactionType.DEPOSIT: Direction.CREDIT,
    TransactionType.WITHDRAWAL: Direction.DEBIT,
}

COMPLETED_JOB = {
    TransactionType.DEPOSIT: DEPOSIT_JOB,
    TransactionType.WITHDRAWAL: WITHDRAWAL_JOB,
}


def _opposite(direction: Direction) -> Direction:
    return Direction.DEBIT if direction == Direction.CREDIT else Direction.CREDIT


def generate_ref_id() -> str:
    """TXN + last 8 digits of the epoch milliseconds + 3 random digits."""
    timestamp = str(int(time.time() * 1000))[-8:]
    return f"TXN{timestamp}{secrets.randbelow(1000):03d}"


async def _unique_ref_id(db: AsyncSession) -> str:
    for _ in range(10):
        ref_id = generate_ref_id()
        existing = await db.execute(
            select(Transaction.id).where(Transaction.ref_id == ref_id)
        )
        if existing.scalar_one_or_none() is None:
            return ref_id
    raise RuntimeError("Failed to generate a unique transaction reference")


def requires_confirmation(user: User, amount_cents: int) -> bool:
    return user.has_pin and amount_cents >= settings.PENDING_THRESHOLD_CENTS


def _check_amount(amount_cents: int) -> None:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidAmountError()


def _is_expired(txn: Transaction) -> bool:
    age = utcnow() - as_utc(txn.created_at)
    return age >= timedelta(minutes=settings.PENDING_EXPIRE_MINUTES)


# ---------------------------------------------------------------------------
# Balance primitives
# ---------------------------------------------------------------------------

async def _read_balance(db: AsyncSession, account_id: uuid.UUID) -> int:
    result = await db.execute(
        select(Account.balance_cents).where(Account.id == account_id)
    )
    return result.scalar_one()


async def _credit(db: AsyncSession, account_id: uuid.UUID, amount_cents: int) -> int | None:
    """Add to the balance if the ceiling allows; the new balance or None."""
    result = await db.execute(
        update(Account)
        .where(Account.id == account_id)
        .where(Account.balance_cents + amount_cents <= settings.MAX_BALANCE_CENTS)
        .values(balance_cents=Account.balance_cents + amount_cents)
        .returning(Account.balance_cents)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def _debit(db: AsyncSession, account_id: uuid.UUID, amount_cents: int) -> int | None:
    """Subtract from the balance if it covers the amount; the new balance or None."""
    result = await db.execute(
        update(Account)
        .where(Account.id == account_id)
        .where(Account.balance_cents >= amount_cents)
        .values(balance_cents=Account.balance_cents - amount_cents)
        .returning(Account.balance_cents)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def _apply(
    db: AsyncSession,
    account_id: uuid.UUID,
    direction: Direction,
    amount_cents: int,
) -> int:
    """
    Apply one balance change and return the new balance.

    Raises:
        BalanceLimitExceededError: A credit would cross MAX_BALANCE_CENTS.
        InsufficientBalanceError: A debit exceeds the balance.
    """
    if direction == Direction.CREDIT:
        balance = await _credit(db, account_id, amount_cents)
        if balance is None:
            raise BalanceLimitExceededError(
                account_id, amount_cents, settings.MAX_BALANCE_CENTS
            )
        return balance

    balance = await _debit(db, account_id, amount_cents)
    if balance is None:
        raise InsufficientBalanceError(
            account_id, amount_cents, await _read_balance(db, account_id)
        )
    return balance


async def _undo(
    db: AsyncSession,
    account_id: uuid.UUID,
    direction: Direction,
    amount_cents: int,
) -> None:
    """Unconditionally revert a change made by _apply in this transaction."""
    delta = -amount_cents if direction == Direction.CREDIT else amount_cents
    await db.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(balance_cents=Account.balance_cents + delta)
        .execution_options(synchronize_session=False)
    )


async def _transition(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    from_status: TransactionStatus,
    to_status: TransactionStatus,
    **values,
) -> bool:
    """Compare-and-set the status; True if this call made the change."""
    result = await db.execute(
        update(Transaction)
        .where(Transaction.id == transaction_id)
        .where(Transaction.status == from_status)
        .values(status=to_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _insert(
    db: AsyncSession,
    account_id: uuid.UUID,
    txn_type: TransactionType,
    direction: Direction,
    amount_cents: int,
    status: TransactionStatus,
    description: str | None = None,
    reversal_of_id: uuid.UUID | None = None,
) -> Transaction:
    txn = Transaction(
        ref_id=await _unique_ref_id(db),
        account_id=account_id,
        type=txn_type,
        direction=direction,
        amount_cents=amount_cents,
        status=status,
        description=description,
        reversal_of_id=reversal_of_id,
    )
    db.add(txn)
    await db.flush()
    return txn


def _notify_insufficient(
    queue: JobSink,
    user_id: uuid.UUID,
    amount_cents: int,
    available_cents: int,
) -> None:
    queue.enqueue(
        INSUFFICIENT_BALANCE_JOB,
        {
            "user_id": str(user_id),
            "amount_cents": amount_cents,
            "balance_cents": available_cents,
        },
    )


def _notify_completed(
    queue: JobSink,
    user_id: uuid.UUID,
    txn: Transaction,
    balance_cents: int,
) -> None:
    queue.enqueue(
        COMPLETED_JOB[txn.type],
        {
            "user_id": str(user_id),
            "amount_cents": txn.amount_cents,
            "balance_cents": balance_cents,
        },
    )


# ---------------------------------------------------------------------------
# Deposits and withdrawals
# ---------------------------------------------------------------------------

async def _create_pending(
    db: AsyncSession,
    queue: JobSink,
    user: User,
    account: Account,
    txn_type: TransactionType,
    amount_cents: int,
    description: str | None,
) -> Transaction:
    txn = await _insert(
        db,
        account.id,
        txn_type,
        TYPE_DIRECTION[txn_type],
        amount_cents,
        TransactionStatus.PENDING,
        description,
    )
    queue.enqueue(
        PENDING_TRANSACTION_JOB,
        {
            "user_id": str(user.id),
            "transaction_type": txn_type.value,
            "amount_cents": amount_cents,
            "ref_id": txn.ref_id,
            "minutes": settings.PENDING_EXPIRE_MINUTES,
        },
    )
    logger.info(
        "transaction_pending",
        transaction_id=str(txn.id),
        type=txn_type.value,
        amount_cents=amount_cents,
    )
    return txn


async def deposit(
    db: AsyncSession,
    queue: JobSink,
    user: User,
    amount_cents: int,
    description: str | None = None,
) -> Transaction:
    """
    Credit the user's savings account.

    Returns:
        A COMPLETED DEPOSIT, or a PENDING one awaiting PIN confirmation.

    Raises:
        InvalidAmountError: amount_cents is not positive.
        AccountNotFoundError: The user has no active account.
        BalanceLimitExceededError: The balance would cross MAX_BALANCE_CENTS.
    """
    _check_amount(amount_cents)
    account = await account_service.get_account_for_user(db, user.id)

    if requires_confirmation(user, amount_cents):
        if await _read_balance(db, account.id) + amount_cents > settings.MAX_BALANCE_CENTS:
            raise BalanceLimitExceededError(
                account.id, amount_cents, settings.MAX_BALANCE_CENTS
            )
        return await _create_pending(
            db, queue, user, account, TransactionType.DEPOSIT, amount_cents, description
        )

    balance = await _apply(db, account.id, Direction.CREDIT, amount_cents)
    txn = await _insert(
        db,
        account.id,
        TransactionType.DEPOSIT,
        Direction.CREDIT,
        amount_cents,
        TransactionStatus.COMPLETED,
        description,
    )
    _notify_completed(queue, user.id, txn, balance)
    logger.info(
        "deposit_completed",
        transaction_id=str(txn.id),
        amount_cents=amount_cents,
        balance_cents=balance,
    )
    return txn


async def withdraw(
    db: AsyncSession,
    queue: JobSink,
    user: User,
    amount_cents: int,
    description: str | None = None,
) -> Transaction:
    """
    Debit the user's savings account.

    On insufficient balance nothing is written; an insufficient-balance
    notification is queued and InsufficientBalanceError raised.

    Returns:
        A COMPLETED WITHDRAWAL, or a PENDING one awaiting PIN confirmation.
    """
    _check_amount(amount_cents)
    account = await account_service.get_account_for_user(db, user.id)

    if requires_confirmation(user, amount_cents):
        available = await _read_balance(db, account.id)
        if available < amount_cents:
            _notify_insufficient(queue, user.id, amount_cents, available)
            raise InsufficientBalanceError(account.id, amount_cents, available)
        return await _create_pending(
            db, queue, user, account, TransactionType.WITHDRAWAL, amount_cents, description
        )

    try:
        balance = await _apply(db, account.id, Direction.DEBIT, amount_cents)
    except InsufficientBalanceError as exc:
        _notify_insufficient(queue, user.id, amount_cents, exc.available_cents)
        logger.info(
            "withdrawal_declined",
            account_id=str(account.id),
            amount_cents=amount_cents,
            available_cents=exc.available_cents,
        )
        raise

    txn = await _insert(
        db,
        account.id,
        TransactionType.WITHDRAWAL,
        Direction.DEBIT,
        amount_cents,
        TransactionStatus.COMPLETED,
        description,
    )
    _notify_completed(queue, user.id, txn, balance)
    logger.info(
        "withdrawal_completed",
        transaction_id=str(txn.id),
        amount_cents=amount_cents,
        balance_cents=balance,
    )
    return txn


# ---------------------------------------------------------------------------
# Pending transactions
# ---------------------------------------------------------------------------

async def get_transaction_for_user(
    db: AsyncSession,
    user: User,
    transaction_id: uuid.UUID,
) -> Transaction:
    """
    Raises:
        TransactionNotFoundError: No such transaction.
        UnauthorizedAccessError: It belongs to another user's account.
    """
    txn = await db.get(Transaction, transaction_id, populate_existing=True)
    if txn is None:
        raise TransactionNotFoundError(transaction_id)
    account = await account_service.get_account_for_user(db, user.id)
    if txn.account_id != account.id:
        raise UnauthorizedAccessError("You do not have access to this transaction")
    return txn


async def _current_status(db: AsyncSession, transaction_id: uuid.UUID) -> TransactionStatus:
    result = await db.execute(
        select(Transaction.status).where(Transaction.id == transaction_id)
    )
    return result.scalar_one()


async def confirm_transaction(
    db: AsyncSession,
    queue: JobSink,
    user: User,
    transaction_id: uuid.UUID,
    pin: str,
) -> Transaction:
    """
    Complete a PENDING transaction with the user's PIN.

    Order: ownership and status, expiry, PIN, balance, status CAS. An
    expired transaction is moved to CANCELLED before TransactionExpiredError
    is raised, and stays CANCELLED.

    Raises:
        TransactionNotFoundError, UnauthorizedAccessError,
        TransactionNotPendingError, TransactionExpiredError,
        PinNotSetError, InvalidPinError,
        InsufficientBalanceError, BalanceLimitExceededError
    """
    txn = await get_transaction_for_user(db, user, transaction_id)
    if txn.status != TransactionStatus.PENDING:
        raise TransactionNotPendingError(txn.id, txn.status.value)

    if _is_expired(txn):
        if await _transition(
            db, txn.id, TransactionStatus.PENDING, TransactionStatus.CANCELLED
        ):
            logger.info("transaction_expired", transaction_id=str(txn.id))
        await db.refresh(txn)
        raise TransactionExpiredError(txn.id)

    auth_service.verify_transaction_pin(user, pin)

    try:
        balance = await _apply(db, txn.account_id, txn.direction, txn.amount_cents)
    except InsufficientBalanceError as exc:
        _notify_insufficient(queue, user.id, txn.amount_cents, exc.available_cents)
        raise

    if not await _transition(
        db, txn.id, TransactionStatus.PENDING, TransactionStatus.COMPLETED
    ):
        await _undo(db, txn.account_id, txn.direction, txn.amount_cents)
        raise TransactionNotPendingError(txn.id, (await _current_status(db, txn.id)).value)

    await db.refresh(txn)
    _notify_completed(queue, user.id, txn, balance)
    logger.info(
        "transaction_confirmed",
        transaction_id=str(txn.id),
        type=txn.type.value,
        amount_cents=txn.amount_cents,
        balance_cents=balance,
    )
    return txn


async def cancel_transaction(
    db: AsyncSession,
    user: User,
    transaction_id: uuid.UUID,
) -> Transaction:
    """PENDING -> CANCELLED. The balance was never touched, so nothing to undo."""
    txn = await get_transaction_for_user(db, user, transaction_id)
    if txn.status != TransactionStatus.PENDING:
        raise TransactionNotPendingError(txn.id, txn.status.value)

    if not await _transition(
        db, txn.id, TransactionStatus.PENDING, TransactionStatus.CANCELLED
    ):
        raise TransactionNotPendingError(txn.id, (await _current_status(db, txn.id)).value)

    await db.refresh(txn)
    logger.info("transaction_cancelled", transaction_id=str(txn.id))
    return txn


async def sweep_expired_transactions(db: AsyncSession) -> int:
    """
    Cancel every PENDING transaction older than PENDING_EXPIRE_MINUTES.

    One bulk UPDATE; running it again over the same rows changes nothing.

    Returns:
        Number of transactions cancelled.
    """
    now = utcnow()
    cutoff = now - timedelta(minutes=settings.PENDING_EXPIRE_MINUTES)
    result = await db.execute(
        update(Transaction)
        .where(Transaction.status == TransactionStatus.PENDING)
        .where(Transaction.created_at <= cutoff)
        .values(status=TransactionStatus.CANCELLED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ---------------------------------------------------------------------------
# Reversal
# ---------------------------------------------------------------------------

async def reverse_transaction(
    db: AsyncSession,
    queue: JobSink,
    admin: User,
    transaction_id: uuid.UUID,
    reason: str,
) -> tuple[Transaction, Transaction]:
    """
    Undo a COMPLETED deposit or withdrawal.

    The inverse balance change is applied first; then the original flips
    COMPLETED -> REVERSED (recording admin, time, and reason) and a
    COMPLETED REVERSAL row is written in the opposite direction.

    Returns:
        Tuple of (original transaction, new REVERSAL transaction).

    Raises:
        TransactionNotFoundError: No such transaction.
        AlreadyReversedError: It was reversed before.
        TransactionNotReversibleError: It is a REVERSAL, or not COMPLETED.
        InsufficientBalanceError: Reversing a deposit that was since spent.
        BalanceLimitExceededError: Reversing a withdrawal would cross the ceiling.
    """
    txn = await db.get(Transaction, transaction_id, populate_existing=True)
    if txn is None:
        raise TransactionNotFoundError(transaction_id)
    if txn.status == TransactionStatus.REVERSED:
        raise AlreadyReversedError(txn.id)
    if txn.type == TransactionType.REVERSAL:
        raise TransactionNotReversibleError(txn.id, "reversals cannot be reversed")
    if txn.status != TransactionStatus.COMPLETED:
        raise TransactionNotReversibleError(txn.id, f"status is {txn.status.value}")

    inverse = _opposite(txn.direction)
    balance = await _apply(db, txn.account_id, inverse, txn.amount_cents)

    if not await _transition(
        db,
        txn.id,
        TransactionStatus.COMPLETED,
        TransactionStatus.REVERSED,
        reversed_by=admin.id,
        reversed_at=utcnow(),
        reversed_reason=reason,
    ):
        await _undo(db, txn.account_id, inverse, txn.amount_cents)
        raise AlreadyReversedError(txn.id)

    reversal = await _insert(
        db,
        txn.account_id,
        TransactionType.REVERSAL,
        inverse,
        txn.amount_cents,
        TransactionStatus.COMPLETED,
        description=f"Reversal of {txn.ref_id}: {reason}",
        reversal_of_id=txn.id,
    )
    await db.refresh(txn)

    account = await account_service.get_account(db, txn.account_id)
    queue.enqueue(
        REVERSAL_JOB,
        {
            "user_id": str(account.user_id),
            "ref_id": txn.ref_id,
            "amount_cents": txn.amount_cents,
            "reason": reason,
        },
    )
    logger.info(
        "transaction_reversed",
        transaction_id=str(txn.id),
        reversal_id=str(reversal.id),
        admin_id=str(admin.id),
        balance_cents=balance,
    )
    return txn, reversal


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def _filtered(query, status: TransactionStatus | None, txn_type: TransactionType | None):
    if status is not None:
        query = query.where(Transaction.status == status)
    if txn_type is not None:
        query = query.where(Transaction.type == txn_type)
    return query


async def get_transaction_history(
    db: AsyncSession,
    user: User,
    page: int = 1,
    limit: int = 20,
    status: TransactionStatus | None = None,
    txn_type: TransactionType | None = None,
) -> tuple[list[Transaction], int]:
    """
    A page of the user's transactions, newest first.

    Returns:
        Tuple of (transactions on this page, total matching transactions).
    """
    account = await account_service.get_account_for_user(db, user.id)
    base = _filtered(
        select(Transaction).where(Transaction.account_id == account.id), status, txn_type
    )

    total = await db.execute(select(func.count()).select_from(base.subquery()))
    result = await db.execute(
        base.order_by(Transaction.created_at.desc(), Transaction.id)
        .limit(limit)
        .offset((page - 1) * limit)
    )
    return list(result.scalars().all()), total.scalar_one()


# ---------------------------------------------------------------------------
# Admin read-only functions
# ---------------------------------------------------------------------------

async def admin_list_transactions(
    db: AsyncSession,
    status: TransactionStatus | None = None,
    txn_type: TransactionType | None = None,
    account_id: uuid.UUID | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Transaction]:
    """[ADMIN ONLY] List transactions across all accounts, newest first."""
    query = _filtered(select(Transaction), status, txn_type)
    if account_id is not None:
        query = query.where(Transaction.account_id == account_id)
    result = await db.execute(
        query.order_by(Transaction.created_at.desc()).limit(limit).offset(offset)
    )
    return list(result.scalars().all())


async def admin_get_transaction(
    db: AsyncSession,
    transaction_id: uuid.UUID,
) -> Transaction:
    """[ADMIN ONLY] Get any transaction by id without an ownership check."""
    txn = await db.get(Transaction, transaction_id, populate_existing=True)
    if txn is None:
        raise TransactionNotFoundError(transaction_id)
    return txn

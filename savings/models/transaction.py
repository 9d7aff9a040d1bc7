"""
Transaction model — records every movement of money on a savings account.

Types:
  - DEPOSIT: money into the account (direction "credit")
  - WITHDRAWAL: money out of the account (direction "debit")
  - REVERSAL: an admin's inverse of an earlier DEPOSIT or WITHDRAWAL; its
    direction is the opposite of the original's and `reversal_of_id` points
    back to it

State machine (forward only):

    (new) ──────────────► COMPLETED ──reverse──► REVERSED
    (new) ──► PENDING ──confirm──► COMPLETED
                 │
                 ├──cancel────────► CANCELLED
                 └──sweep/expiry──► CANCELLED

A COMPLETED or REVERSED row always corresponds to exactly one balance
mutation that has already been applied. PENDING and CANCELLED rows never
touched the balance. Recomputing the balance is therefore:

    Σ credit amounts − Σ debit amounts  over status ∈ {COMPLETED, REVERSED}

`amount_cents` is always positive; `direction` carries the sign.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, BigInteger, DateTime, Enum, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from savings.database import Base


class TransactionType(str, enum.Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    REVERSAL = "REVERSAL"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REVERSED = "REVERSED"


class Direction(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


# Statuses whose balance mutation has been applied
APPLIED_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.REVERSED)


class Transaction(Base):
    __tablename__ = "transactions"

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_transactions_positive_amount"),
        Index("ix_transactions_status_created", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Human-readable reference, e.g. TXN12345678042
    ref_id: Mapped[str] = mapped_column(
        String(32),
        unique=True,
        nullable=False,
    )

    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=False,
        index=True,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType),
        nullable=False,
    )

    direction: Mapped[Direction] = mapped_column(
        Enum(Direction),
        nullable=False,
    )

    amount_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus),
        nullable=False,
        default=TransactionStatus.COMPLETED,
    )

    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Set on REVERSAL rows: the transaction being undone
    reversal_of_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("transactions.id"),
        nullable=True,
    )

    # Set on the original row when an admin reverses it
    reversed_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id"),
        nullable=True,
    )
    reversed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    reversed_reason: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

"""
Account model — the savings ledger of one user.

Each user owns exactly one savings account, created at registration. The
balance lives in `balance_cents` (integer cents, so 99,999,999.99 is
9_999_999_999) and is only ever changed by the ledger service through a
single conditional UPDATE, e.g.

    UPDATE accounts SET balance_cents = balance_cents - :amount
    WHERE id = :id AND balance_cents >= :amount

which makes the sufficiency check and the decrement one atomic step in the
database. The CHECK constraint below is the final safety net.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Boolean, BigInteger, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from savings.database import Base


class Account(Base):
    __tablename__ = "accounts"

    __table_args__ = (
        CheckConstraint(
            "balance_cents >= 0",
            name="ck_accounts_non_negative_balance",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # One account per user
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        unique=True,
        nullable=False,
    )

    account_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="savings",
    )

    # 16 digits: bank identifier + 12 random digits
    account_number: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        nullable=False,
    )

    balance_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # --- Relationships ---
    user: Mapped["User"] = relationship(
        back_populates="account",
    )

"""
User model — the authentication identity.

Each User is a login credential (email + Argon2 password hash) with a role,
an email-verification flag, an active flag, and an optional transaction PIN
hash. Users are never hard-deleted here: deactivation (for example after
repeated failed logins) flips `is_active`.

Roles:
  - CLIENT: Savings customer. Can only log in from verified devices.
  - ADMIN: Operator. Audits and reverses transactions. Unknown devices are
    trusted automatically at login (see services/device_service.py).
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Boolean, DateTime, Enum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from savings.database import Base


class UserRole(str, enum.Enum):
    """
    Role a user holds within the savings platform.

    Inherits from str so the value serializes naturally to JSON.
    """
    CLIENT = "client"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Login identifier, unique and indexed
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    hashed_password: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)

    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole),
        default=UserRole.CLIENT,
        nullable=False,
    )

    # Set once the EMAIL_VERIFICATION code is redeemed
    is_verified: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Soft-disable: deactivated users can't log in but their data is preserved
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    # SHA-256 of the outstanding password-reset token, if any
    password_reset_token_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    password_reset_expires: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Argon2 hash of the transaction PIN; NULL until the user sets one
    transaction_pin_hash: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
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
    account: Mapped["Account"] = relationship(
        back_populates="user",
        uselist=False,
    )

    @property
    def has_pin(self) -> bool:
        return self.transaction_pin_hash is not None

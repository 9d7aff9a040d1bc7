"""
OneTimeCode model — short numeric step-up codes scoped by (user, purpose).

A code is redeemed exactly once: verification flips `is_used` with a
conditional UPDATE (WHERE is_used = false), so two racing requests carrying
the same code cannot both succeed. Used and expired rows are garbage
collected by the expiry sweeper.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Boolean, DateTime, Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from savings.database import Base


class OtcPurpose(str, enum.Enum):
    LOGIN = "LOGIN"
    TRANSACTION = "TRANSACTION"
    DEVICE_VERIFICATION = "DEVICE_VERIFICATION"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"


class OneTimeCode(Base):
    __tablename__ = "one_time_codes"

    __table_args__ = (
        Index("ix_one_time_codes_user_purpose", "user_id", "purpose"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
    )

    code: Mapped[str] = mapped_column(String(12), nullable=False)

    purpose: Mapped[OtcPurpose] = mapped_column(
        Enum(OtcPurpose),
        nullable=False,
    )

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    is_used: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

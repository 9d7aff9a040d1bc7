"""
SQLAlchemy ORM models package.

All models are imported here so that:
  1. Base.metadata knows every table before create_all() runs
  2. Other modules can import from savings.models directly
"""

from savings.models.user import User, UserRole  # noqa: F401
from savings.models.account import Account  # noqa: F401
from savings.models.device import Device  # noqa: F401
from savings.models.session import UserSession  # noqa: F401
from savings.models.one_time_code import OneTimeCode, OtcPurpose  # noqa: F401
from savings.models.transaction import (  # noqa: F401
    Direction,
    Transaction,
    TransactionStatus,
    TransactionType,
)

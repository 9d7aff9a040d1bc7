"""
Pydantic schemas for savings and transaction endpoints.

All monetary amounts are in integer cents (e.g., $10.50 = 1050).
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from savings.config import settings


class AmountRequest(BaseModel):
    """Request body for POST /savings/deposit and /savings/withdraw."""
    amount_cents: int = Field(
        gt=0,
        le=settings.MAX_BALANCE_CENTS,
        description="Amount in cents (must be positive)",
    )
    description: str | None = Field(None, max_length=255)


class ConfirmRequest(BaseModel):
    """Request body for POST /savings/confirm/{id}."""
    pin: str = Field(min_length=4, max_length=6, pattern=r"^\d+$")


class TransactionResponse(BaseModel):
    """Public representation of a transaction."""
    id: uuid.UUID
    ref_id: str
    account_id: uuid.UUID
    type: str
    direction: str
    amount_cents: int
    status: str
    description: str | None
    reversal_of_id: uuid.UUID | None
    reversed_by: uuid.UUID | None
    reversed_at: datetime | None
    reversed_reason: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class TransactionPage(BaseModel):
    """A page of transaction history, newest first."""
    items: list[TransactionResponse]
    total: int
    page: int
    limit: int
    pages: int


class BalanceResponse(BaseModel):
    """
    Balance check response — includes both cached and computed values.

    The `match` field indicates whether the cached balance agrees with
    the balance computed from COMPLETED and REVERSED transactions. A
    mismatch would indicate a data integrity issue.
    """
    account_id: uuid.UUID
    account_number: str
    balance_cents: int
    computed_balance_cents: int
    match: bool


class ReverseRequest(BaseModel):
    """Request body for POST /admin/transactions/{id}/reverse."""
    reason: str = Field(min_length=3, max_length=500)


class ReversalResponse(BaseModel):
    original: TransactionResponse
    reversal: TransactionResponse

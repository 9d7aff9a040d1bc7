"""
Pydantic schemas for User-related responses.

These schemas control what user data is exposed through the API.
Notice that hashed_password and transaction_pin_hash are NEVER included in
any response schema — this is a critical security boundary.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, EmailStr


class UserResponse(BaseModel):
    """Public representation of a User (never includes password or PIN hash)."""
    id: uuid.UUID
    email: EmailStr
    first_name: str
    last_name: str
    role: str
    is_verified: bool
    is_active: bool
    has_pin: bool
    created_at: datetime

    model_config = {"from_attributes": True}

"""
Pydantic schemas for authentication endpoints.

These schemas define the request/response contracts for the auth API.
Pydantic validates incoming data automatically — if a required field is
missing or the wrong type, FastAPI returns a 422 error before our code
even runs.

`device_id` is the identifier the client app generates once per
installation; it is what the device trust registry keys on.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field


class RegisterRequest(BaseModel):
    """Request body for POST /auth/register."""
    email: EmailStr                                # Validates email format
    password: str = Field(min_length=8)            # Minimum 8 characters
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    phone: str | None = Field(None, max_length=20)
    device_id: str = Field(min_length=1, max_length=255)
    device_name: str | None = Field(None, max_length=255)


class LoginRequest(BaseModel):
    """
    Request body for POST /auth/login.

    Send without `otc` first; the server e-mails a LOGIN code. Then send
    the same body again with the code.
    """
    email: EmailStr
    password: str
    device_id: str = Field(min_length=1, max_length=255)
    device_name: str | None = Field(None, max_length=255)
    otc: str | None = Field(None, min_length=4, max_length=12)


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    """An access/refresh pair."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: uuid.UUID


class RegisterResponse(BaseModel):
    """Response body for successful registration — user info + tokens."""
    user_id: uuid.UUID
    email: str
    role: str
    account_number: str
    tokens: TokenResponse


class LoginResponse(BaseModel):
    """
    Login outcome. `requires_otc` is True after the first phase, and
    `tokens` is set after the second.
    """
    requires_otc: bool = False
    user_id: uuid.UUID
    tokens: TokenResponse | None = None


class VerifyEmailRequest(BaseModel):
    code: str = Field(min_length=4, max_length=12)


class SessionResponse(BaseModel):
    id: uuid.UUID
    device_id: uuid.UUID
    ip_address: str | None
    user_agent: str | None
    issued_at: datetime
    expires_at: datetime
    refresh_expires_at: datetime
    last_used: datetime
    is_current: bool = False

    model_config = {"from_attributes": True}


class DeviceResponse(BaseModel):
    id: uuid.UUID
    device_id: str
    device_name: str | None
    platform: str | None
    is_verified: bool
    last_used: datetime
    created_at: datetime

    model_config = {"from_attributes": True}


class VerifyDeviceRequest(BaseModel):
    """Request body for POST /auth/devices/verify."""
    device_id: str = Field(min_length=1, max_length=255)
    code: str = Field(min_length=4, max_length=12)


class MessageResponse(BaseModel):
    message: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    """Request body for POST /auth/reset-password — token from the reset e-mail."""
    token: str = Field(min_length=16, max_length=128)
    new_password: str = Field(min_length=8)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(min_length=8)

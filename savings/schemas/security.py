"""
Pydantic schemas for step-up security endpoints (one-time codes, PIN).
"""

from pydantic import BaseModel, Field

from savings.models.one_time_code import OtcPurpose


class OtcRequest(BaseModel):
    """Request body for POST /security/otc/request."""
    purpose: OtcPurpose


class OtcVerifyRequest(BaseModel):
    """Request body for POST /security/otc/verify."""
    purpose: OtcPurpose
    code: str = Field(min_length=4, max_length=12)


class SetPinRequest(BaseModel):
    """Request body for POST /security/pin. The account password is required."""
    pin: str = Field(min_length=4, max_length=6, pattern=r"^\d+$")
    current_password: str


class VerifiedResponse(BaseModel):
    verified: bool = True

"""
Domain exception classes and the FastAPI exception handler.

Services raise these without importing any HTTP concepts; the single
handler registered in register_exception_handlers() turns them into
{"detail": ..., "error_type": ...} responses with the class's status code.

Exception hierarchy:
    SavingsAPIError (base)
    ├── Authentication
    │   ├── InvalidCredentialsError   — bad email/password
    │   ├── AccountLockedError        — too many failed logins / deactivated
    │   ├── UntrustedDeviceError      — login from an unverified device
    │   ├── DeviceNotFoundError       — verifying an unknown device
    │   ├── InvalidTokenError         — bad signature, expired, or superseded
    │   ├── SessionInvalidError       — session revoked or expired
    │   ├── SessionNotFoundError      — revoking a session that is not live
    │   ├── InvalidOtcError           — one-time code wrong, used, or expired
    │   ├── InvalidResetTokenError    — password-reset token wrong, used, or expired
    │   ├── InvalidPinError           — transaction PIN mismatch
    │   ├── PinNotSetError            — confirming without a PIN configured
    │   └── DuplicateEmailError       — registering a taken email
    ├── Ledger
    │   ├── AccountNotFoundError
    │   ├── InvalidAmountError
    │   ├── InsufficientBalanceError
    │   ├── BalanceLimitExceededError
    │   ├── TransactionNotFoundError
    │   ├── TransactionNotPendingError
    │   ├── TransactionExpiredError
    │   ├── AlreadyReversedError
    │   └── TransactionNotReversibleError
    └── UnauthorizedAccessError       — ownership or role mismatch

Infrastructure failures (database, cache) are deliberately not part of this
hierarchy; they propagate as their own exception types and become 500s.
"""

import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class SavingsAPIError(Exception):
    """Base exception for all Savings API domain errors."""

    status_code: int = 400
    error_type: str = "savings_error"

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)

    def extra(self) -> dict:
        """Additional fields merged into the JSON error body."""
        return {}


# ---------------------------------------------------------------------------
# Authentication and session errors
# ---------------------------------------------------------------------------

class InvalidCredentialsError(SavingsAPIError):
    """Raised when login credentials are incorrect."""

    status_code = 401
    error_type = "invalid_credentials"

    def __init__(self, detail: str = "Invalid email or password"):
        super().__init__(detail)


class AccountLockedError(SavingsAPIError):
    """Raised when the failed-login limit is reached or the user is deactivated."""

    status_code = 423
    error_type = "account_locked"

    def __init__(
        self,
        detail: str = "Account temporarily locked due to too many failed login attempts",
    ):
        super().__init__(detail)


class UntrustedDeviceError(SavingsAPIError):
    status_code = 403
    error_type = "untrusted_device"

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__("You can not log in with this device")


class DeviceNotFoundError(SavingsAPIError):
    status_code = 404
    error_type = "device_not_found"

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Device {device_id} not found")


class InvalidTokenError(SavingsAPIError):
    status_code = 401
    error_type = "invalid_or_expired_token"

    def __init__(self, detail: str = "Invalid or expired token"):
        super().__init__(detail)


class SessionInvalidError(SavingsAPIError):
    status_code = 401
    error_type = "session_invalid"

    def __init__(self, detail: str = "Session is no longer valid"):
        super().__init__(detail)


class SessionNotFoundError(SavingsAPIError):
    status_code = 404
    error_type = "session_not_found"

    def __init__(self, session_id: uuid.UUID):
        self.session_id = session_id
        super().__init__("Session not found or already revoked")


class InvalidOtcError(SavingsAPIError):
    status_code = 400
    error_type = "invalid_or_expired_otc"

    def __init__(self, detail: str = "Invalid or expired one-time code"):
        super().__init__(detail)


class InvalidResetTokenError(SavingsAPIError):
    status_code = 400
    error_type = "invalid_or_expired_reset_token"

    def __init__(self, detail: str = "Invalid or expired password reset token"):
        super().__init__(detail)


class InvalidPinError(SavingsAPIError):
    status_code = 400
    error_type = "invalid_pin"

    def __init__(self, detail: str = "Invalid transaction PIN"):
        super().__init__(detail)


class PinNotSetError(SavingsAPIError):
    status_code = 400
    error_type = "pin_not_set"

    def __init__(self, detail: str = "No transaction PIN is configured"):
        super().__init__(detail)


class DuplicateEmailError(SavingsAPIError):
    """Raised when attempting to register with an email that's already in use."""

    status_code = 409
    error_type = "duplicate_email"

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Email {email} is already registered")


# ---------------------------------------------------------------------------
# Ledger errors
# ---------------------------------------------------------------------------

class AccountNotFoundError(SavingsAPIError):
    status_code = 404
    error_type = "account_not_found"

    def __init__(self, account_id: uuid.UUID | None = None):
        self.account_id = account_id
        if account_id is None:
            super().__init__("No active account found")
        else:
            super().__init__(f"Account {account_id} not found")


class InvalidAmountError(SavingsAPIError):
    status_code = 422
    error_type = "invalid_amount"

    def __init__(self, detail: str = "Amount must be a positive number of cents"):
        super().__init__(detail)


class InsufficientBalanceError(SavingsAPIError):
    """
    Raised when a withdrawal (or a reversal of a deposit) exceeds the balance.

    Attributes:
        account_id: The account that lacks sufficient funds.
        requested_cents: The amount the caller tried to remove.
        available_cents: The balance observed when the request was rejected.
    """

    status_code = 422
    error_type = "insufficient_balance"

    def __init__(
        self,
        account_id: uuid.UUID,
        requested_cents: int,
        available_cents: int,
    ):
        self.account_id = account_id
        self.requested_cents = requested_cents
        self.available_cents = available_cents
        super().__init__(
            f"Insufficient balance: requested {requested_cents} cents, "
            f"available {available_cents} cents"
        )

    def extra(self) -> dict:
        return {
            "requested_cents": self.requested_cents,
            "available_cents": self.available_cents,
        }


class BalanceLimitExceededError(SavingsAPIError):
    status_code = 422
    error_type = "balance_limit_exceeded"

    def __init__(self, account_id: uuid.UUID, requested_cents: int, max_balance_cents: int):
        self.account_id = account_id
        self.requested_cents = requested_cents
        self.max_balance_cents = max_balance_cents
        super().__init__(
            f"Deposit would exceed the maximum balance of {max_balance_cents} cents"
        )

    def extra(self) -> dict:
        return {
            "requested_cents": self.requested_cents,
            "max_balance_cents": self.max_balance_cents,
        }


class TransactionNotFoundError(SavingsAPIError):
    status_code = 404
    error_type = "transaction_not_found"

    def __init__(self, transaction_id: uuid.UUID):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class TransactionNotPendingError(SavingsAPIError):
    status_code = 409
    error_type = "transaction_not_pending"

    def __init__(self, transaction_id: uuid.UUID, status: str):
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(f"Transaction is not pending (status: {status})")


class TransactionExpiredError(SavingsAPIError):
    status_code = 410
    error_type = "transaction_expired"

    def __init__(self, transaction_id: uuid.UUID):
        self.transaction_id = transaction_id
        super().__init__("Transaction has expired and was cancelled")


class AlreadyReversedError(SavingsAPIError):
    status_code = 409
    error_type = "already_reversed"

    def __init__(self, transaction_id: uuid.UUID):
        self.transaction_id = transaction_id
        super().__init__("Transaction already reversed")


class TransactionNotReversibleError(SavingsAPIError):
    status_code = 409
    error_type = "transaction_not_reversible"

    def __init__(self, transaction_id: uuid.UUID, reason: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction cannot be reversed: {reason}")


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------

class UnauthorizedAccessError(SavingsAPIError):
    """Raised when a user attempts to access a resource they don't own."""

    status_code = 403
    error_type = "unauthorized_access"

    def __init__(self, detail: str = "You do not have access to this resource"):
        super().__init__(detail)


# ---------------------------------------------------------------------------
# FastAPI exception handler
# ---------------------------------------------------------------------------

def register_exception_handlers(app: FastAPI) -> None:
    """
    Register the domain exception handler with the FastAPI application.

    Every SavingsAPIError subclass maps to its own status code and the
    consistent JSON body {"detail", "error_type", ...extra}.
    """

    @app.exception_handler(SavingsAPIError)
    async def savings_error_handler(
        request: Request, exc: SavingsAPIError
    ) -> JSONResponse:
        headers = None
        if exc.status_code == 401:
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error_type": exc.error_type, **exc.extra()},
            headers=headers,
        )

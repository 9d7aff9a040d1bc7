"""
Notification service — job handlers for customer-facing messages.

The ledger and auth services only enqueue jobs; this module turns those
jobs into e-mails. Two layers, mirroring how the jobs are produced:

  1. Event jobs (deposit_notification, withdrawal_notification, ...) carry
     ids and amounts. Their handler looks up the user's e-mail address and
     enqueues an email_notification job.
  2. email_notification jobs carry {email, template, data}. Their handler
     renders the template and hands it to the EmailSender.

Rendering and transport are deliberately plain: the production mail relay
is an external collaborator that implements EmailSender.
"""

import uuid
from abc import ABC, abstractmethod

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from savings.logging import get_logger
from savings.models.user import User
from savings.services.queue_service import JobQueue

logger = get_logger(__name__)


EMAIL_JOB = "email_notification"
DEPOSIT_JOB = "deposit_notification"
WITHDRAWAL_JOB = "withdrawal_notification"
INSUFFICIENT_BALANCE_JOB = "insufficient_balance_notification"
PENDING_TRANSACTION_JOB = "pending_transaction_notification"
REVERSAL_JOB = "reversal_notification"
LOGIN_JOB = "login_notification"
PASSWORD_CHANGED_JOB = "password_changed_notification"


# template -> (subject, body); bodies are str.format() templates
TEMPLATES: dict[str, tuple[str, str]] = {
    "welcome_email": (
        "Welcome to your savings account",
        "Hi {first_name}, your savings account is ready.",
    ),
    "email_verification": (
        "Verify your e-mail address",
        "Hi {first_name}, your verification code is {code}. It expires in {minutes} minutes.",
    ),
    "otc_email": (
        "Your one-time code",
        "Your {purpose} code is {code}. It expires in {minutes} minutes.",
    ),
    "login_notification": (
        "New sign-in to your account",
        "Hi {first_name}, a new sign-in was recorded from {ip_address} ({device_name}).",
    ),
    "password_reset": (
        "Reset your password",
        "Hi {first_name}, use this token to reset your password: {token}. "
        "It expires in {minutes} minutes. If you didn't ask for this, ignore this e-mail.",
    ),
    "password_changed": (
        "Your password was changed",
        "Hi {first_name}, your password was changed from {ip_address}. "
        "If this wasn't you, reset your password now.",
    ),
    "deposit_confirmation": (
        "Deposit received",
        "Hi {first_name}, {amount} was deposited. New balance: {balance}.",
    ),
    "withdrawal_alert": (
        "Withdrawal processed",
        "Hi {first_name}, {amount} was withdrawn. New balance: {balance}.",
    ),
    "insufficient_balance_alert": (
        "Withdrawal declined",
        "Hi {first_name}, a withdrawal of {amount} was declined. Available balance: {balance}.",
    ),
    "pending_transaction": (
        "Confirm your transaction",
        "Hi {first_name}, confirm your {transaction_type} of {amount} (ref {ref_id}) "
        "with your PIN within {minutes} minutes.",
    ),
    "reversal_notice": (
        "Transaction reversed",
        "Hi {first_name}, transaction {ref_id} of {amount} was reversed: {reason}.",
    ),
}


def format_cents(amount_cents: int) -> str:
    """1234567 -> '12,345.67'."""
    return f"{amount_cents // 100:,}.{amount_cents % 100:02d}"


def render(template: str, data: dict) -> tuple[str, str]:
    """Return (subject, body) for a template name."""
    subject, body = TEMPLATES[template]
    return subject, body.format(**data)


class EmailSender(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, body: str) -> None: ...


class LoggingEmailSender(EmailSender):
    """Default sender: records the delivery in the log instead of sending."""

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info("email_sent", recipient=to, subject=subject)


class NotificationService:
    """
    Registers notification handlers on a JobQueue.

    Args:
        queue: The dispatcher to register on and to enqueue e-mails into.
        session_factory: Opens short-lived DB sessions for user lookups.
        sender: E-mail transport.
    """

    def __init__(
        self,
        queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession],
        sender: EmailSender | None = None,
    ):
        self.queue = queue
        self.session_factory = session_factory
        self.sender = sender or LoggingEmailSender()

    def register(self) -> None:
        self.queue.register(EMAIL_JOB, self.send_email)
        self.queue.register(DEPOSIT_JOB, self.deposit_confirmation)
        self.queue.register(WITHDRAWAL_JOB, self.withdrawal_alert)
        self.queue.register(INSUFFICIENT_BALANCE_JOB, self.insufficient_balance_alert)
        self.queue.register(PENDING_TRANSACTION_JOB, self.pending_transaction)
        self.queue.register(REVERSAL_JOB, self.reversal_notice)
        self.queue.register(LOGIN_JOB, self.login_notification)
        self.queue.register(PASSWORD_CHANGED_JOB, self.password_changed)

    async def send_email(self, payload: dict) -> None:
        subject, body = render(payload["template"], payload.get("data", {}))
        await self.sender.send(payload["email"], subject, body)

    async def _user(self, user_id: str) -> User | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(User).where(User.id == uuid.UUID(user_id))
            )
            return result.scalar_one_or_none()

    async def _email_user(self, user_id: str, template: str, data: dict) -> None:
        user = await self._user(user_id)
        if user is None:
            logger.warning("notification_user_missing", user_id=user_id, template=template)
            return
        self.queue.enqueue(
            EMAIL_JOB,
            {
                "email": user.email,
                "template": template,
                "data": {"first_name": user.first_name, **data},
            },
        )

    async def deposit_confirmation(self, payload: dict) -> None:
        await self._email_user(
            payload["user_id"],
            "deposit_confirmation",
            {
                "amount": format_cents(payload["amount_cents"]),
                "balance": format_cents(payload["balance_cents"]),
            },
        )

    async def withdrawal_alert(self, payload: dict) -> None:
        await self._email_user(
            payload["user_id"],
            "withdrawal_alert",
            {
                "amount": format_cents(payload["amount_cents"]),
                "balance": format_cents(payload["balance_cents"]),
            },
        )

    async def insufficient_balance_alert(self, payload: dict) -> None:
        await self._email_user(
            payload["user_id"],
            "insufficient_balance_alert",
            {
                "amount": format_cents(payload["amount_cents"]),
                "balance": format_cents(payload["balance_cents"]),
            },
        )

    async def pending_transaction(self, payload: dict) -> None:
        await self._email_user(
            payload["user_id"],
            "pending_transaction",
            {
                "transaction_type": payload["transaction_type"].lower(),
                "amount": format_cents(payload["amount_cents"]),
                "ref_id": payload["ref_id"],
                "minutes": payload["minutes"],
            },
        )

    async def reversal_notice(self, payload: dict) -> None:
        await self._email_user(
            payload["user_id"],
            "reversal_notice",
            {
                "ref_id": payload["ref_id"],
                "amount": format_cents(payload["amount_cents"]),
                "reason": payload["reason"],
            },
        )

    async def login_notification(self, payload: dict) -> None:
        await self._email_user(
            payload["user_id"],
            "login_notification",
            {
                "ip_address": payload.get("ip_address") or "unknown address",
                "device_name": payload.get("device_name") or "unknown device",
            },
        )

    async def password_changed(self, payload: dict) -> None:
        await self._email_user(
            payload["user_id"],
            "password_changed",
            {"ip_address": payload.get("ip_address") or "an unknown address"},
        )

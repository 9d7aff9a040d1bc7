"""
Step-up authenticator — numeric one-time codes scoped by (user, purpose).

A code is valid for OTC_EXPIRE_MINUTES and can be redeemed once. Redemption
is a compare-and-set on `is_used`: the row is flipped only if it is still
unused, so two concurrent requests carrying the same code cannot both win.
"""

from datetime import timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from savings.clock import utcnow
from savings.config import settings
from savings.logging import get_logger
from savings.models.one_time_code import OneTimeCode, OtcPurpose
from savings.models.user import User
from savings.security import generate_numeric_code
from savings.services.notification_service import EMAIL_JOB
from savings.services.queue_service import JobSink

logger = get_logger(__name__)


async def generate_code(
    db: AsyncSession,
    queue: JobSink,
    user: User,
    purpose: OtcPurpose,
) -> str:
    """
    Persist a fresh code and queue its delivery by e-mail.

    Returns:
        The code. Callers must never hand it back to an untrusted client.
    """
    code = generate_numeric_code(settings.OTC_LENGTH)
    db.add(
        OneTimeCode(
            user_id=user.id,
            code=code,
            purpose=purpose,
            expires_at=utcnow() + timedelta(minutes=settings.OTC_EXPIRE_MINUTES),
        )
    )
    await db.flush()

    if purpose == OtcPurpose.EMAIL_VERIFICATION:
        template = "email_verification"
        data = {"first_name": user.first_name}
    else:
        template = "otc_email"
        data = {"purpose": purpose.value.replace("_", " ").lower()}
    data.update(code=code, minutes=settings.OTC_EXPIRE_MINUTES)
    queue.enqueue(EMAIL_JOB, {"email": user.email, "template": template, "data": data})

    logger.info("otc_issued", user_id=str(user.id), purpose=purpose.value)
    return code


async def verify_code(
    db: AsyncSession,
    user: User,
    code: str,
    purpose: OtcPurpose,
) -> bool:
    """True exactly once for an unused, unexpired code matching user and purpose."""
    now = utcnow()
    candidate = await db.execute(
        select(OneTimeCode.id)
        .where(OneTimeCode.user_id == user.id)
        .where(OneTimeCode.code == code)
        .where(OneTimeCode.purpose == purpose)
        .where(OneTimeCode.is_used.is_(False))
        .where(OneTimeCode.expires_at > now)
        .limit(1)
    )
    otc_id = candidate.scalar_one_or_none()
    if otc_id is None:
        return False

    result = await db.execute(
        update(OneTimeCode)
        .where(OneTimeCode.id == otc_id)
        .where(OneTimeCode.is_used.is_(False))
        .values(is_used=True)
    )
    return result.rowcount == 1


async def sweep_expired_codes(db: AsyncSession) -> int:
    """Delete used or expired codes. Returns the number removed."""
    result = await db.execute(
        delete(OneTimeCode).where(
            or_(OneTimeCode.expires_at < utcnow(), OneTimeCode.is_used.is_(True))
        )
    )
    return result.rowcount

"""
Device trust registry — per-user allow-list of client installations.

Login policy:
  - A role listed in DeviceTrustPolicy.auto_trust_roles (ADMIN by default)
    may log in from an unknown device; the device is registered and marked
    verified on the spot. This is an intentional trust asymmetry for
    operator accounts and is kept as data, not as an inline role check.
  - Every other role must log in from a device that is already registered
    AND verified for that user, otherwise UntrustedDeviceError.
"""

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from savings.clock import utcnow
from savings.config import settings
from savings.exceptions import DeviceNotFoundError, UntrustedDeviceError
from savings.logging import get_logger
from savings.models.device import Device
from savings.models.user import User, UserRole

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeviceTrustPolicy:
    auto_trust_roles: frozenset[UserRole] = frozenset({UserRole.ADMIN})

    @classmethod
    def from_settings(cls) -> "DeviceTrustPolicy":
        return cls(frozenset(UserRole(role) for role in settings.AUTO_TRUST_ROLES))

    def auto_trusts(self, role: UserRole) -> bool:
        return role in self.auto_trust_roles


@dataclass
class DeviceMetadata:
    device_name: str | None = None
    platform: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None

    @classmethod
    def from_user_agent(
        cls,
        user_agent: str | None,
        ip_address: str | None = None,
        device_name: str | None = None,
    ) -> "DeviceMetadata":
        platform, described = describe_user_agent(user_agent)
        return cls(
            device_name=device_name or described,
            platform=platform,
            user_agent=user_agent,
            ip_address=ip_address,
        )


def describe_user_agent(user_agent: str | None) -> tuple[str | None, str]:
    """
    Rough (platform, "Browser on OS") guess from a User-Agent header.

    Order matters: Chrome UAs also contain "Safari", and Android UAs
    contain "Linux".
    """
    if not user_agent:
        return None, "Unknown Device"

    if "Edg" in user_agent:
        browser = "Edge"
    elif "Chrome" in user_agent:
        browser = "Chrome"
    elif "Firefox" in user_agent:
        browser = "Firefox"
    elif "Safari" in user_agent:
        browser = "Safari"
    else:
        browser = "Browser"

    if "Android" in user_agent:
        os_name = "Android"
    elif "iPhone" in user_agent or "iPad" in user_agent:
        os_name = "iOS"
    elif "Windows" in user_agent:
        os_name = "Windows"
    elif "Mac" in user_agent:
        os_name = "macOS"
    elif "Linux" in user_agent:
        os_name = "Linux"
    else:
        os_name = "Unknown"

    platform = os_name.lower() if os_name != "Unknown" else None
    return platform, f"{browser} on {os_name}"


async def get_device(
    db: AsyncSession,
    user_id: uuid.UUID,
    device_id: str,
) -> Device | None:
    result = await db.execute(
        select(Device)
        .where(Device.user_id == user_id)
        .where(Device.device_id == device_id)
    )
    return result.scalar_one_or_none()


async def register_device(
    db: AsyncSession,
    user_id: uuid.UUID,
    device_id: str,
    metadata: DeviceMetadata | None = None,
    is_verified: bool = False,
) -> Device:
    """
    Upsert a device for a user.

    A repeat registration refreshes last_used and the request metadata. It
    never clears an existing verification.
    """
    metadata = metadata or DeviceMetadata()
    device = await get_device(db, user_id, device_id)
    if device is None:
        device = Device(
            user_id=user_id,
            device_id=device_id,
            device_name=metadata.device_name,
            platform=metadata.platform,
            user_agent=metadata.user_agent,
            ip_address=metadata.ip_address,
            is_verified=is_verified,
        )
        db.add(device)
    else:
        device.last_used = utcnow()
        if metadata.user_agent is not None:
            device.user_agent = metadata.user_agent
        if metadata.platform is not None:
            device.platform = metadata.platform
        if metadata.ip_address is not None:
            device.ip_address = metadata.ip_address
        device.is_verified = device.is_verified or is_verified

    await db.flush()
    return device


async def verify_device(
    db: AsyncSession,
    user_id: uuid.UUID,
    device_id: str,
) -> Device:
    """
    Mark a registered device as trusted.

    Raises:
        DeviceNotFoundError: The user has no device with this id.
    """
    device = await get_device(db, user_id, device_id)
    if device is None:
        raise DeviceNotFoundError(device_id)

    device.is_verified = True
    await db.flush()
    logger.info("device_verified", user_id=str(user_id), device_id=device_id)
    return device


async def list_devices(
    db: AsyncSession,
    user_id: uuid.UUID,
    is_verified: bool | None = None,
) -> list[Device]:
    query = select(Device).where(Device.user_id == user_id)
    if is_verified is not None:
        query = query.where(Device.is_verified.is_(is_verified))
    result = await db.execute(query.order_by(Device.last_used.desc()))
    return list(result.scalars().all())


async def check_login_device(
    db: AsyncSession,
    user: User,
    device_id: str,
    policy: DeviceTrustPolicy,
) -> None:
    """
    Raise UntrustedDeviceError early if the login is bound to fail.

    Used before a LOGIN code is generated, so an untrusted device never
    receives one.
    """
    if policy.auto_trusts(user.role):
        return
    device = await get_device(db, user.id, device_id)
    if device is None or not device.is_verified:
        raise UntrustedDeviceError(device_id)


async def authorize_login_device(
    db: AsyncSession,
    user: User,
    device_id: str,
    policy: DeviceTrustPolicy,
    metadata: DeviceMetadata | None = None,
) -> Device:
    """
    Apply the login policy and return the device the session is bound to.

    Raises:
        UntrustedDeviceError: The role is not auto-trusted and the device is
            unknown or unverified.
    """
    if policy.auto_trusts(user.role):
        existing = await get_device(db, user.id, device_id)
        device = await register_device(db, user.id, device_id, metadata, is_verified=True)
        if existing is None:
            logger.info(
                "device_auto_trusted",
                user_id=str(user.id),
                device_id=device_id,
                role=user.role.value,
            )
        return device

    await check_login_device(db, user, device_id, policy)
    return await register_device(db, user.id, device_id, metadata)

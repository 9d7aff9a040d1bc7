"""
Expiry sweeper — periodic clean-up of stale state.

Each run, in its own database transaction:
  - cancels PENDING transactions older than PENDING_EXPIRE_MINUTES
  - deletes used or expired one-time codes

Both steps are bulk conditional statements, so a second run over the same
rows changes nothing. A failed run is logged by PeriodicTask and retried on
the next tick.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from savings.clock import PeriodicTask
from savings.logging import get_logger
from savings.services import ledger_service, otc_service

logger = get_logger(__name__)


class ExpirySweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float,
    ):
        self.session_factory = session_factory
        self.task = PeriodicTask("expiry_sweeper", interval_seconds, self.sweep)

    async def sweep(self) -> dict[str, int]:
        async with self.session_factory() as session:
            try:
                cancelled = await ledger_service.sweep_expired_transactions(session)
                otcs_removed = await otc_service.sweep_expired_codes(session)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        if cancelled or otcs_removed:
            logger.info(
                "sweep_completed",
                transactions_cancelled=cancelled,
                otcs_removed=otcs_removed,
            )
        return {"transactions_cancelled": cancelled, "otcs_removed": otcs_removed}

    def start(self) -> None:
        self.task.start()

    async def stop(self) -> None:
        await self.task.stop()

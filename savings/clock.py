"""
Time helpers and the periodic task runner.

All timestamps in the system are timezone-aware UTC. SQLite drops tzinfo
on the way back out of DateTime columns, so anything read from the database
goes through as_utc() before it is compared with utcnow().

PeriodicTask drives the background loops (expiry sweeper). A failed run is
logged and the loop carries on; the next tick retries.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from savings.logging import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes loaded from the database."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PeriodicTask:
    """Run an async callable every `interval` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[object]],
    ):
        self.name = name
        self.interval = interval
        self._func = func
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("periodic_task_started", task=self.name, interval=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("periodic_task_stopped", task=self.name)

    async def run_once(self) -> None:
        try:
            await self._func()
        except Exception as exc:
            logger.error(
                "periodic_task_failed",
                task=self.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

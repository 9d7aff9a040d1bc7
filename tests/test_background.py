"""
Tests for background work: the job dispatcher, notification handlers,
the expiry sweeper, and the periodic task runner.

Jobs produced inside a database transaction are held by SessionJobBuffer
until it commits.

The dispatcher takes a clock, so retry backoff is tested by stepping a
fake clock instead of sleeping.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from savings.clock import PeriodicTask, utcnow
from savings.exceptions import InsufficientBalanceError
from savings.models.account import Account
from savings.models.transaction import Transaction, TransactionStatus
from savings.services import ledger_service
from savings.services.notification_service import (
    DEPOSIT_JOB,
    EMAIL_JOB,
    INSUFFICIENT_BALANCE_JOB,
    render,
)
from savings.services.queue_service import JobQueue, SessionJobBuffer
from savings.services.sweeper_service import ExpirySweeper


class FakeClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class Flaky:
    """Job handler that fails a set number of times before succeeding."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def __call__(self, payload: dict) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("mail relay unavailable")


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class TestJobQueue:

    async def test_drain_runs_due_jobs(self):
        queue = JobQueue(autostart=False)
        seen = []

        async def handler(payload):
            seen.append(payload["n"])

        queue.register("count", handler)
        queue.enqueue("count", {"n": 1})
        queue.enqueue("count", {"n": 2})

        assert await queue.drain() == 2
        assert seen == [1, 2]
        assert len(queue) == 0

    async def test_retry_with_backoff(self):
        clock = FakeClock()
        queue = JobQueue(clock=clock, autostart=False)
        handler = Flaky(failures=1)
        queue.register("flaky", handler)
        queue.enqueue("flaky", {})

        assert await queue.drain() == 0
        assert handler.calls == 1
        assert len(queue) == 1

        # First retry is due 2 seconds later
        clock.advance(1.9)
        await queue.drain()
        assert handler.calls == 1

        clock.advance(0.1)
        assert await queue.drain() == 1
        assert handler.calls == 2
        assert len(queue) == 0

    async def test_dropped_after_max_attempts(self):
        clock = FakeClock()
        queue = JobQueue(max_attempts=3, clock=clock, autostart=False)
        handler = Flaky(failures=10)
        queue.register("broken", handler)
        queue.enqueue("broken", {})

        await queue.drain()
        clock.advance(2)
        await queue.drain()
        clock.advance(4)
        await queue.drain()

        assert handler.calls == 3
        assert len(queue) == 0

        clock.advance(60)
        await queue.drain()
        assert handler.calls == 3

    async def test_job_without_handler_dropped(self):
        queue = JobQueue(autostart=False)
        queue.enqueue("nobody_listens", {})
        assert await queue.drain() == 0
        assert len(queue) == 0

    async def test_delayed_job(self):
        clock = FakeClock()
        queue = JobQueue(clock=clock, autostart=False)
        handler = Flaky(failures=0)
        queue.register("later", handler)
        queue.enqueue("later", {}, delay=30)

        await queue.drain()
        assert handler.calls == 0
        clock.advance(30)
        await queue.drain()
        assert handler.calls == 1

    async def test_failure_does_not_block_other_jobs(self):
        queue = JobQueue(autostart=False)
        good = Flaky(failures=0)
        queue.register("bad", Flaky(failures=10))
        queue.register("good", good)
        queue.enqueue("bad", {})
        queue.enqueue("good", {})

        assert await queue.drain() == 1
        assert good.calls == 1

    async def test_autostart_runs_without_drain(self):
        queue = JobQueue()
        done = asyncio.Event()

        async def handler(payload):
            done.set()

        queue.register("ping", handler)
        queue.enqueue("ping", {})
        await asyncio.wait_for(done.wait(), timeout=1)
        await queue.close()

    async def test_wakeup_runs_deferred_job(self):
        queue = JobQueue()
        done = asyncio.Event()

        async def handler(payload):
            done.set()

        queue.register("soon", handler)
        queue.enqueue("soon", {}, delay=0.05)
        await asyncio.wait_for(done.wait(), timeout=1)
        await queue.close()

    async def test_close_stops_scheduling(self):
        queue = JobQueue()
        handler = Flaky(failures=0)
        queue.register("job", handler)
        await queue.close()

        queue.enqueue("job", {})
        await asyncio.sleep(0.01)
        assert handler.calls == 0
        assert len(queue) == 1


# ---------------------------------------------------------------------------
# Jobs held until commit
# ---------------------------------------------------------------------------

class Recorder:
    def __init__(self):
        self.payloads = []

    async def __call__(self, payload: dict) -> None:
        self.payloads.append(payload)


class TestSessionJobBuffer:

    async def test_released_on_commit(self, session_factory, make_user):
        user = await make_user("commit@example.com")
        queue = JobQueue(autostart=False)
        deposits = Recorder()
        queue.register(DEPOSIT_JOB, deposits)

        async with session_factory() as db:
            buffer = SessionJobBuffer(queue, db)
            await ledger_service.deposit(db, buffer, user, 2_500)
            assert len(buffer) == 1
            assert len(queue) == 0
            await db.commit()

        assert len(buffer) == 0
        await queue.drain()
        assert [p["amount_cents"] for p in deposits.payloads] == [2_500]

    async def test_discarded_on_rollback(self, session_factory, make_user):
        user = await make_user("rollback@example.com")
        queue = JobQueue(autostart=False)

        async with session_factory() as db:
            buffer = SessionJobBuffer(queue, db)
            await ledger_service.deposit(db, buffer, user, 2_500)
            await db.rollback()

        assert len(buffer) == 0
        assert len(queue) == 0
        async with session_factory() as db:
            account = (
                await db.execute(select(Account).where(Account.user_id == user.id))
            ).scalar_one()
            assert account.balance_cents == 0

    async def test_domain_error_commit_releases_notice(self, session_factory, make_user):
        """A declined withdrawal still tells the user, because its session commits."""
        user = await make_user("declined@example.com")
        queue = JobQueue(autostart=False)
        declined = Recorder()
        queue.register(INSUFFICIENT_BALANCE_JOB, declined)

        async with session_factory() as db:
            buffer = SessionJobBuffer(queue, db)
            with pytest.raises(InsufficientBalanceError):
                await ledger_service.withdraw(db, buffer, user, 5_000)
            await db.commit()

        await queue.drain()
        assert declined.payloads[0]["amount_cents"] == 5_000

    async def test_each_commit_releases_its_own_jobs(self, session_factory, make_user):
        user = await make_user("twice@example.com")
        queue = JobQueue(autostart=False)
        deposits = Recorder()
        queue.register(DEPOSIT_JOB, deposits)

        async with session_factory() as db:
            buffer = SessionJobBuffer(queue, db)
            await ledger_service.deposit(db, buffer, user, 100)
            await db.commit()
            await ledger_service.deposit(db, buffer, user, 200)
            await db.rollback()

        await queue.drain()
        assert [p["amount_cents"] for p in deposits.payloads] == [100]


# ---------------------------------------------------------------------------
# Notification handlers
# ---------------------------------------------------------------------------

class TestNotifications:

    def test_render(self):
        subject, body = render("welcome_email", {"first_name": "Ada"})
        assert subject == "Welcome to your savings account"
        assert body == "Hi Ada, your savings account is ready."

    async def test_event_job_becomes_email(self, queue, notifications, outbox, make_user):
        user = await make_user("events@example.com")
        queue.enqueue(
            DEPOSIT_JOB,
            {"user_id": str(user.id), "amount_cents": 1000, "balance_cents": 250000},
        )
        await queue.drain()

        [message] = [m for m in outbox.to("events@example.com") if m["subject"] == "Deposit received"]
        assert message["body"] == "Hi Sam, 10.00 was deposited. New balance: 2,500.00."

    async def test_unknown_user_sends_nothing(self, queue, notifications, outbox):
        queue.enqueue(
            DEPOSIT_JOB,
            {
                "user_id": "00000000-0000-0000-0000-000000000000",
                "amount_cents": 1000,
                "balance_cents": 1000,
            },
        )
        await queue.drain()
        assert outbox.sent == []

    async def test_failed_send_is_retried(self, queue, notifications, outbox):
        """A sender error goes through the queue's retry path."""
        calls = []
        original = outbox.send

        async def flaky_send(to, subject, body):
            calls.append(to)
            if len(calls) == 1:
                raise ConnectionError("smtp down")
            await original(to, subject, body)

        outbox.send = flaky_send
        queue.enqueue(
            EMAIL_JOB,
            {"email": "retry@example.com", "template": "welcome_email", "data": {"first_name": "R"}},
        )
        await queue.drain()
        assert outbox.sent == []
        assert len(queue) == 1


# ---------------------------------------------------------------------------
# Expiry sweeper and periodic runner
# ---------------------------------------------------------------------------

class TestExpirySweeper:

    async def test_sweep_counts(self, db_session, session_factory, queue, make_user):
        user = await make_user("sweep@example.com", pin="1234")
        stale = await ledger_service.deposit(db_session, queue, user, 100_000)
        await db_session.execute(
            update(Transaction)
            .where(Transaction.id == stale.id)
            .values(created_at=utcnow() - timedelta(minutes=30))
        )
        await db_session.commit()

        sweeper = ExpirySweeper(session_factory, interval_seconds=60)
        assert await sweeper.sweep() == {"transactions_cancelled": 1, "otcs_removed": 0}
        assert await sweeper.sweep() == {"transactions_cancelled": 0, "otcs_removed": 0}

        refreshed = await db_session.get(Transaction, stale.id, populate_existing=True)
        assert refreshed.status == TransactionStatus.CANCELLED

    async def test_start_and_stop(self, session_factory):
        sweeper = ExpirySweeper(session_factory, interval_seconds=0.01)
        sweeper.start()
        assert sweeper.task.running
        await asyncio.sleep(0.05)
        await sweeper.stop()
        assert not sweeper.task.running


class TestPeriodicTask:

    async def test_runs_repeatedly(self):
        runs = []

        async def tick():
            runs.append(1)

        task = PeriodicTask("ticker", 0.01, tick)
        task.start()
        await asyncio.sleep(0.1)
        await task.stop()
        assert len(runs) >= 2

    async def test_failure_does_not_stop_loop(self):
        runs = []

        async def explode():
            runs.append(1)
            raise RuntimeError("boom")

        task = PeriodicTask("exploder", 0.01, explode)
        task.start()
        await asyncio.sleep(0.1)
        assert task.running
        await task.stop()
        assert len(runs) >= 2

    async def test_run_once_swallows_errors(self):
        async def explode():
            raise RuntimeError("boom")

        await PeriodicTask("once", 60, explode).run_once()

    async def test_stop_without_start(self):
        await PeriodicTask("idle", 60, pytest.fail).stop()

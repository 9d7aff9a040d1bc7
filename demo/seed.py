#!/usr/bin/env python3
"""
Demo seed script — populates the database with sample savers for demos.

!! NOT FOR PRODUCTION !!
This script creates users with known passwords, PINs and trusted devices.
It is intended ONLY for local demos and frontend development.

It talks to the services directly (not over HTTP) because a client can only
sign in from a device it has verified with an e-mailed code; seeding marks
each demo device as verified instead.

Usage:
    python demo/seed.py              # seed into DATABASE_URL
    python demo/seed.py --reset      # delete the SQLite file and exit

Login credentials after seeding (device_id "demo-device"):
    ┌──────────────────────────────┬───────────────────┬──────┬────────┐
    │ Email                        │ Password          │ PIN  │ Role   │
    ├──────────────────────────────┼───────────────────┼──────┼────────┤
    │ admin@savingsdemo.com        │ AdminDemo123!     │      │ admin  │
    │ alice.chen@example.com       │ AliceDemo123!     │ 1111 │ client │
    │ bob.martinez@example.com     │ BobDemo123!       │      │ client │
    │ carol.nguyen@example.com     │ CarolDemo123!     │ 3333 │ client │
    └──────────────────────────────┴───────────────────┴──────┴────────┘
"""

import argparse
import asyncio
import os
import random

from sqlalchemy import update

from savings.cache import MemoryCache
from savings.config import settings
from savings.database import AsyncSessionLocal, Base, engine
from savings.exceptions import InsufficientBalanceError
from savings.models.user import User, UserRole
from savings.services import account_service, auth_service, device_service, ledger_service
from savings.services.queue_service import JobQueue

DEVICE_ID = "demo-device"

ADMIN = {
    "email": "admin@savingsdemo.com",
    "password": "AdminDemo123!",
    "first_name": "Admin",
    "last_name": "User",
}

SAVERS = [
    {
        "email": "alice.chen@example.com",
        "password": "AliceDemo123!",
        "first_name": "Alice",
        "last_name": "Chen",
        "pin": "1111",
        "opening_deposit": 5_000_00,
    },
    {
        "email": "bob.martinez@example.com",
        "password": "BobDemo123!",
        "first_name": "Bob",
        "last_name": "Martinez",
        "pin": None,
        "opening_deposit": 1_200_00,
    },
    {
        "email": "carol.nguyen@example.com",
        "password": "CarolDemo123!",
        "first_name": "Carol",
        "last_name": "Nguyen",
        "pin": "3333",
        "opening_deposit": 2_500_00,
    },
]

DEPOSIT_DESCRIPTIONS = ["Payroll top-up", "Birthday gift", "Refund", "Cash deposit"]
WITHDRAWAL_DESCRIPTIONS = ["Rent", "Holiday fund", "Car repair", "Emergency"]


def log(msg: str) -> None:
    print(f"  {msg}")


def cents_to_display(cents: int) -> str:
    return f"{cents / 100:,.2f}"


async def create_user(session, cache, queue, user: dict) -> User:
    created, _ = await auth_service.register(
        session,
        cache,
        queue,
        email=user["email"],
        password=user["password"],
        first_name=user["first_name"],
        last_name=user["last_name"],
        device_id=DEVICE_ID,
    )
    await device_service.verify_device(session, created.id, DEVICE_ID)
    return created


async def seed_history(session, queue, user: User, months: int) -> None:
    """A few deposits and withdrawals per month, all below the PIN threshold."""
    for _ in range(months):
        for _ in range(random.randint(2, 4)):
            await ledger_service.deposit(
                session, queue, user,
                random.randint(50_00, 400_00),
                random.choice(DEPOSIT_DESCRIPTIONS),
            )
        for _ in range(random.randint(1, 3)):
            try:
                await ledger_service.withdraw(
                    session, queue, user,
                    random.randint(20_00, 300_00),
                    random.choice(WITHDRAWAL_DESCRIPTIONS),
                )
            except InsufficientBalanceError:
                break


async def seed() -> None:
    print("\n========================================")
    print("  DEMO SEED — NOT FOR PRODUCTION")
    print("========================================\n")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    cache = MemoryCache()
    # Nothing is delivered while seeding; queued e-mails are discarded
    queue = JobQueue(autostart=False)

    async with AsyncSessionLocal() as session:
        print("Creating admin user...")
        admin = await create_user(session, cache, queue, ADMIN)
        # No self-service promotion endpoint exists; this is an operator action
        await session.execute(
            update(User).where(User.id == admin.id).values(role=UserRole.ADMIN)
        )
        log(f"Admin: {ADMIN['email']} / {ADMIN['password']}")

        for saver in SAVERS:
            print(f"\nCreating {saver['first_name']} {saver['last_name']}...")
            user = await create_user(session, cache, queue, saver)
            log(f"Login: {saver['email']} / {saver['password']}")

            # Deposit before setting a PIN so the opening balance isn't held
            await ledger_service.deposit(
                session, queue, user, saver["opening_deposit"], "Opening deposit"
            )
            await seed_history(session, queue, user, months=2)

            if saver["pin"]:
                await auth_service.set_transaction_pin(
                    session, user, saver["pin"], saver["password"]
                )
                log(f"PIN: {saver['pin']}")

            account = await account_service.get_account_for_user(session, user.id)
            balance = await account_service.get_balance(session, account)
            log(f"{balance['account_number']}: {cents_to_display(balance['balance_cents'])}")

        await session.commit()

    await engine.dispose()

    print("\n========================================")
    print("  SEED COMPLETE")
    print("========================================\n")


def reset_database() -> None:
    """Delete the SQLite database file so the server recreates it on restart."""
    prefix = "sqlite+aiosqlite:///"
    if not settings.DATABASE_URL.startswith(prefix):
        print(f"\n  Not a SQLite file database: {settings.DATABASE_URL}\n")
        return

    db_path = os.path.normpath(settings.DATABASE_URL[len(prefix):])
    if os.path.exists(db_path):
        os.remove(db_path)
        print(f"\n  Deleted {db_path}")
        print("  Restart the server to recreate empty tables.\n")
    else:
        print(f"\n  No database found at {db_path}\n")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Demo seed script — NOT FOR PRODUCTION",
        epilog="Creates sample savers with trusted devices and transaction history.",
    )
    parser.add_argument(
        "--reset", action="store_true",
        help="Delete the database file and exit (restart server to recreate)",
    )
    args = parser.parse_args()

    if args.reset:
        reset_database()
        return

    asyncio.run(seed())


if __name__ == "__main__":
    main()

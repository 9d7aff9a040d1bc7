#!/usr/bin/env python3
"""Promote an existing user to admin. Run on the server: promote_admin.py EMAIL"""
import asyncio
import os
import sys
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from savings.models.user import User, UserRole

async def promote(email: str):
    engine = create_async_engine(os.environ["DATABASE_URL"])
    sf = async_sessionmaker(engine, class_=AsyncSession)
    async with sf() as s:
        r = await s.execute(
            update(User)
            .where(User.email == email.strip().lower())
            .values(role=UserRole.ADMIN)
        )
        await s.commit()
        print(f"Rows updated: {r.rowcount}")
    await engine.dispose()

asyncio.run(promote(sys.argv[1] if len(sys.argv) > 1 else "admin@savingsdemo.com"))

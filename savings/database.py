"""
Database engine, session management, and base model class.

This module sets up SQLAlchemy 2.0 with async support. Key components:

  - engine: The async database engine (connection pool for production DBs)
  - AsyncSessionLocal: Factory for creating async database sessions
  - Base: Declarative base class that all ORM models inherit from
  - get_db(): FastAPI dependency that provides a session per request

The relational store is the serialization boundary for the ledger. Balance
changes, one-time-code redemption, and transaction status changes are all
single conditional UPDATE statements, so correctness does not depend on
in-process locks and holds across several API processes.

Session lifecycle:
  Each API request gets its own session via get_db(). The session commits
  on success and on domain errors (services raise those either before
  mutating or after an intentional state change such as expiring a pending
  transaction), and rolls back on anything else.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from savings.config import settings
from savings.exceptions import SavingsAPIError


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
)

# expire_on_commit=False prevents lazy-load errors after commit in async code
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


async def get_db():
    """
    FastAPI dependency that provides a database session.

    Usage in a route:
        @router.get("/items")
        async def list_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except SavingsAPIError:
            await session.commit()
            raise
        except Exception:
            await session.rollback()
            raise

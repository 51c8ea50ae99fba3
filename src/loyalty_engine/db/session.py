"""Engine and session construction.

Engines and session factories are built explicitly and handed to the services
that need them; nothing here is created at import time.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

from loguru import logger
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from loyalty_engine.core.errors import InfrastructureError, LoyaltyError

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create the async engine; in-memory SQLite keeps one shared connection."""

    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
        return create_async_engine(url, echo=echo, future=True, poolclass=StaticPool)
    return create_async_engine(url, echo=echo, future=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def open_session(session_factory: SessionFactory) -> AsyncSession:
    """Resolve a session from sync or async factories."""

    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


@asynccontextmanager
async def unit_of_work(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit on success, roll back on any error.

    Datastore errors are re-raised as ``InfrastructureError`` after rollback so
    callers never observe a half-applied write.
    """

    try:
        yield session
        await session.commit()
    except LoyaltyError:
        await session.rollback()
        raise
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("Unit of work rolled back after datastore error", error=str(exc))
        raise InfrastructureError(f"Datastore error: {exc.__class__.__name__}") from exc
    except BaseException:
        await session.rollback()
        raise


__all__ = [
    "SessionFactory",
    "build_engine",
    "build_session_factory",
    "open_session",
    "unit_of_work",
]

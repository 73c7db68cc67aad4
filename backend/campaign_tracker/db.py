from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .settings import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    """Base declarative class for SQLAlchemy models."""


engine = create_async_engine(
    settings.async_database_url,
    future=True,
    echo=False,
)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def make_session_factory(database_url: str) -> async_sessionmaker:
    """Build an independent engine + session factory (scheduler on another DB)."""
    own_engine = create_async_engine(database_url, echo=False)
    return async_sessionmaker(own_engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def disposable_session_factory(database_url: str | None = None) -> AsyncIterator[async_sessionmaker]:
    """Session factory on a private engine, disposed on exit.

    Celery tasks run each job inside a fresh asyncio.run(); pooled connections
    are bound to the loop that opened them and cannot outlive it.
    """
    own_engine = create_async_engine(database_url or settings.async_database_url, echo=False)
    try:
        yield async_sessionmaker(own_engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await own_engine.dispose()


async def get_session() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        yield session

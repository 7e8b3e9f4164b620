"""
Database Connection and Session Management

Three ways to get a session:
- ``get_db``: FastAPI dependency for route handlers.
- ``session_scope``: for code outside the dependency system (the idempotency
  middleware). Uses the factory registered with ``set_session_factory`` so
  tests can point it at their own engine.
- ``get_task_session``: a fresh engine per Celery task run.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from relay.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()

_session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal


def set_session_factory(factory: async_sessionmaker[AsyncSession] | None) -> None:
    """Replace the factory used by session_scope (None restores the default)"""
    global _session_factory
    _session_factory = factory or AsyncSessionLocal


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Session for code that does not run inside a FastAPI dependency"""
    async with _session_factory() as session:
        yield session


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting database session"""
    async with _session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """
    Create a fresh database session for Celery tasks.

    Each task run gets its own event loop (see ``run_async``), and an asyncpg
    connection cannot cross loops, so the engine lives exactly as long as the
    task. NullPool: the engine is disposed right after, pooling buys nothing.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        poolclass=NullPool,
    )
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    try:
        async with task_session_maker() as session:
            yield session
    finally:
        await task_engine.dispose()

"""
Database engine and sessions.

Three ways in:
- ``get_db``: request-scoped session for route handlers
- ``get_session_factory``: for webhook ledger work that runs after the
  response is sent, when the request session is already closed
- ``get_task_session``: Celery runs, on an engine bound to the task's loop
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from bakery_orders.core.config import settings

Base = declarative_base()


def _engine_options(url: str, pooled: bool = False) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.DEBUG, "pool_pre_ping": True}
    # SQLite (tests, local runs) has no sized pool
    if pooled and not url.startswith("sqlite"):
        options.update(pool_size=5, max_overflow=10)
    return options


engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

AsyncSessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        yield session


def get_session_factory():
    return AsyncSessionLocal


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """
    Fresh engine and session per Celery run. Each run has its own event
    loop and asyncpg connections cannot cross loops.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL, pooled=True)
    )
    try:
        async with async_sessionmaker(bind=task_engine, class_=AsyncSession, expire_on_commit=False)() as session:
            yield session
    finally:
        await task_engine.dispose()

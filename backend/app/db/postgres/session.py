from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from . import engine as engine_module


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with engine_module.sessionmaker() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def worker_session() -> AsyncIterator[AsyncSession]:
    """Session for background sweeps: commits on success, rolls back on failure."""
    async with engine_module.sessionmaker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise

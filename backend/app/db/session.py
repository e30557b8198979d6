############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# session.py: Async engine, session factory, and FastAPI dependency
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Database engine and session management.

The engine and session factory are built once at startup and handed to
the services and routes that need them; nothing here is a module-level
singleton.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Tuple

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from backend.app.db.base import Base
from backend.app.settings import Settings

SessionFactory = async_sessionmaker[AsyncSession]


def create_session_factory(settings: Settings) -> Tuple[AsyncEngine, SessionFactory]:
    """Create the async engine and its session factory."""
    engine_kwargs = {"echo": settings.database_echo, "pool_pre_ping": True}
    engine = create_async_engine(settings.database_url, **engine_kwargs)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, factory


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(factory: SessionFactory) -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope: commit on success, roll back on error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_async_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session from the app's factory."""
    async with session_scope(request.app.state.session_factory) as session:
        yield session

from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from todo_sync.config import settings
from todo_sync.db_urls import normalize_database_url_for_async


def _create_async_engine(database_url: str) -> AsyncEngine:
    # 运行时统一使用异步 driver
    url = normalize_database_url_for_async(database_url)
    return create_async_engine(url, echo=False, pool_pre_ping=True)


@lru_cache(maxsize=4)
def get_engine() -> AsyncEngine:
    # 测试/部署可以覆写 settings.database_url 后调用 reset_engine_cache() 重建 engine
    return _create_async_engine(settings.database_url)


def reset_engine_cache() -> None:
    dispose_engine_cache()


def dispose_engine_cache() -> None:
    if get_engine.cache_info().currsize:
        # Drop pooled connections without awaiting (safe outside an event loop).
        get_engine().sync_engine.dispose(close=False)
    get_engine.cache_clear()


async def dispose_engine() -> None:
    # Ensure sqlite/aiosqlite worker threads don't keep the process alive.
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
    get_engine.cache_clear()


async def init_db() -> None:
    # 仅用于本地/测试场景兜底；生产以 Alembic 迁移为准
    from todo_sync import models  # noqa: F401  # register tables on SQLModel.metadata

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


def _session_maker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    async with _session_maker()() as session:
        yield session


async def get_session() -> AsyncIterator[AsyncSession]:
    async with _session_maker()() as session:
        yield session

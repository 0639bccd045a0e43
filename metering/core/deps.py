# metering/core/deps.py
from functools import lru_cache
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from metering.core.logger import setup_logging
from metering.core.settings import settings
from metering.engine.engine import AggregationService
from metering.persistence.repo import SqlEventStore

setup_logging()


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    kwargs = {"echo": settings.DB_ECHO, "pool_pre_ping": True}
    if not settings.DATABASE_URL.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
        )
    return create_async_engine(settings.DATABASE_URL, **kwargs)


@lru_cache(maxsize=1)
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), expire_on_commit=False, class_=AsyncSession)


@asynccontextmanager
async def aggregation_service() -> AsyncGenerator[AggregationService, None]:
    # read-only: the session is never committed
    async with get_sessionmaker()() as session:
        yield AggregationService(SqlEventStore(session))

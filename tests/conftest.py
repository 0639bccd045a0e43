from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from metering.persistence.base import Base
from metering.persistence.memory import InMemoryEventStore
from metering.persistence.repo import SqlEventStore
from metering.schemas.models import AggregationWindow, SubscriptionScope, UsageEvent

PERIOD_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2024, 2, 1, tzinfo=timezone.utc)


@pytest.fixture()
def scope() -> SubscriptionScope:
    return SubscriptionScope(organization_id="org-1", subscription_id="sub-1")


@pytest.fixture()
def window(scope: SubscriptionScope) -> AggregationWindow:
    return AggregationWindow(
        from_datetime=PERIOD_START,
        to_datetime=PERIOD_END,
        scope=scope,
        code="api_calls",
    )


@pytest.fixture()
def make_event(scope: SubscriptionScope):
    """
    factory for events inside the test period; `at` is an offset in hours
    from the period start.
    """
    ids = count(1)

    def _make(at: float = 1, code: str = "api_calls", **properties) -> UsageEvent:
        return UsageEvent(
            transaction_id=f"tx-{next(ids)}",
            organization_id=scope.organization_id,
            subscription_id=scope.subscription_id,
            code=code,
            timestamp=PERIOD_START + timedelta(hours=at),
            properties=properties,
        )

    return _make


@pytest.fixture()
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest_asyncio.fixture
async def async_db():
    """in-memory SQLite database holding the usage_events table."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def sql_store(async_db: AsyncSession) -> SqlEventStore:
    return SqlEventStore(async_db)

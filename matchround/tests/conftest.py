"""
Shared fixtures for the matching lifecycle test suite.

Every test gets its own SQLite file so concurrent sessions see one database.
"""
from datetime import datetime, timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

import matchround.orm  # noqa: F401  registers all models
from matchround.config.settings import settings
from matchround.database import build_sessionmaker
from matchround.orm.period import MatchingPeriod
from matchround.orm.base import Base
from matchround.services.period_store import PeriodStore
from matchround.services.star_ledger import StarLedger

T0 = datetime(2026, 3, 2, 12, 0, 0)


class Clock:
    """Mutable simulated clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def build_period(**overrides) -> MatchingPeriod:
    """Unsaved period with the standard shape, for pure resolver tests."""
    values = {
        "id": 1,
        "application_start": T0,
        "application_end": T0 + timedelta(hours=1),
        "matching_run": T0 + timedelta(hours=1),
        "matching_announce": T0 + timedelta(hours=2),
        "finish": T0 + timedelta(days=3),
        "executed": False,
    }
    values.update(overrides)
    return MatchingPeriod(**values)


@pytest.fixture(autouse=True)
def matching_settings(monkeypatch):
    """Pin business settings so tests do not depend on the environment."""
    monkeypatch.setattr(settings, "MATCHING_CANCEL_COOLDOWN_MINUTES", 1)
    monkeypatch.setattr(settings, "MATCHING_APPLY_COST", 5)
    monkeypatch.setattr(settings, "MATCHING_STATUS_POLL_SECONDS", 5)
    monkeypatch.setattr(settings, "MATCHING_STORE_RETRY_BACKOFF_MS", 0)
    monkeypatch.setattr(settings, "STAR_INITIAL_BALANCE", 0)
    monkeypatch.setattr(settings, "STAR_HISTORY_LIMIT", 20)
    return settings


@pytest.fixture
def clock() -> Clock:
    return Clock(T0)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'matchround_test.db'}",
        connect_args={"timeout": 30.0}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


async def make_period(db: AsyncSession, start: datetime = T0, **overrides):
    """Register a period with the standard shape: 1h open, announce at +2h, finish at +3d."""
    timestamps = {
        "application_start": start,
        "application_end": start + timedelta(hours=1),
        "matching_run": start + timedelta(hours=1),
        "matching_announce": start + timedelta(hours=2),
        "finish": start + timedelta(days=3),
    }
    timestamps.update(overrides)
    period = await PeriodStore.register_period(db, **timestamps)
    # Detached so service rollbacks cannot expire it under the test
    db.expunge(period)
    return period


async def grant_stars(db: AsyncSession, user_id: int, amount: int, key: str = "seed"):
    change = await StarLedger.credit(db, user_id, amount, f"grant:{user_id}:{key}")
    await db.commit()
    return change


@pytest_asyncio.fixture
async def period(db):
    return await make_period(db)

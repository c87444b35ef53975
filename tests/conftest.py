from __future__ import annotations

import fakeredis
import pytest

from jukebox.db.models import Base
from jukebox.db.session import build_engine, build_sessionmaker
from jukebox.economy.points.service import PointsLedger
from jukebox.economy.points.types import TransactionType


@pytest.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_sessionmaker(engine)

    await engine.dispose()


@pytest.fixture
def ledger(session_factory) -> PointsLedger:
    return PointsLedger(session_factory)


@pytest.fixture
def fund(ledger: PointsLedger):
    async def _fund(user_id: str, venue_id: str, amount: int) -> int:
        result = await ledger.apply_transaction(
            user_id=user_id,
            venue_id=venue_id,
            type=TransactionType.EARN,
            amount=amount,
            description="test top-up",
        )
        return result.balance_after

    return _fund


@pytest.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis()
    await client.flushall()

    yield client

    await client.aclose()

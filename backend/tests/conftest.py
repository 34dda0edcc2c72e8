import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import pytest
from sqlalchemy import update

from arena.core import database
from arena.core.security import limiter
from arena.models.contest import Contest, ContestCreate, ContestStatus
from arena.models.market import Asset
from arena.services.contest_lifecycle import ContestLifecycle
from arena.services.price_store import PriceStore
from arena.services.wallet_ledger import WalletLedger

NOW = datetime(2026, 1, 5, 12, 0, 0)


class Seed:
    """Async builders for test data; each call runs in its own committed session."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def session(self):
        return self.session_factory()

    async def asset(self, symbol: str, instrument_id: Optional[str] = None) -> Asset:
        async with self.session() as session:
            asset = Asset(symbol=symbol, name=symbol, instrument_id=instrument_id)
            session.add(asset)
            await session.commit()
            return asset

    async def wallet(self, balance: int = 10000, user_id: Optional[UUID] = None) -> UUID:
        """Provision a wallet holding `balance` cents; returns the user id."""
        user_id = user_id or uuid4()
        async with self.session() as session:
            await WalletLedger(session).provision(user_id, balance)
            await session.commit()
        return user_id

    async def contest(
        self,
        asset_ids,
        entry_fee: str = "10.00",
        virtual_capital: str = "1000.00",
        max_participants: Optional[int] = None,
        status: ContestStatus = ContestStatus.JOINING_OPEN,
        start_time: datetime = NOW + timedelta(hours=1),
        end_time: datetime = NOW + timedelta(hours=2),
        **extra,
    ) -> Contest:
        data = ContestCreate(
            title="Weekly Crypto Cup",
            track="crypto",
            entry_fee=Decimal(entry_fee),
            virtual_capital=Decimal(virtual_capital),
            max_participants=max_participants,
            start_time=start_time,
            end_time=end_time,
            asset_ids=list(asset_ids),
            **extra,
        )
        async with self.session() as session:
            contest = await ContestLifecycle(session).create_contest(data)
        if status != ContestStatus.UPCOMING:
            await self.force_status(contest.id, status)
            contest.status = status
        return contest

    async def force_status(self, contest_id: UUID, status: ContestStatus) -> None:
        async with self.session() as session:
            await session.execute(update(Contest).where(Contest.id == contest_id).values(status=status))
            await session.commit()

    async def tick(self, asset_id: UUID, at: datetime, price: str, volume: str = "1") -> None:
        """Write one price into the minute candle containing `at`."""
        bucket = at.replace(second=0, microsecond=0)
        async with self.session() as session:
            await PriceStore(session).upsert_tick(asset_id, bucket, Decimal(price), Decimal(volume), at)
            await session.commit()

    async def balance(self, user_id: UUID) -> int:
        async with self.session() as session:
            wallet = await WalletLedger(session).get_wallet(user_id)
            return wallet.balance


@pytest.fixture
def session_factory(tmp_path):
    database.init_engine(f"sqlite+aiosqlite:///{tmp_path / 'arena.db'}")
    asyncio.run(database.init_db())
    yield database.get_session_factory()
    asyncio.run(database.close_db())


@pytest.fixture
def seed(session_factory):
    return Seed(session_factory)


@pytest.fixture(autouse=True)
def no_rate_limit():
    previous = limiter.enabled
    limiter.enabled = False
    yield
    limiter.enabled = previous

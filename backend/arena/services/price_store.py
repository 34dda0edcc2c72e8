"""
Price Store

Persisted OHLCV candles, one row per (asset, bucket). Written by the market
data aggregator, read by valuation, replay and market history.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import case, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from arena.core.clock import utcnow
from arena.models.market import PriceCandle


class PriceStore:

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert_tick(
        self,
        asset_id: UUID,
        bucket: datetime,
        price: Decimal,
        volume: Decimal,
        observed_at: datetime,
    ) -> None:
        """
        Fold one tick into its candle in a single statement.

        high/low are max/min. open/close follow the tick timestamps, not
        arrival order: open only moves to an earlier tick, close only to a
        tick at least as recent as the stored one.
        """
        insert = postgresql.insert if self.session.bind.dialect.name == "postgresql" else sqlite.insert
        stmt = insert(PriceCandle).values(
            asset_id=asset_id,
            bucket=bucket,
            open=price,
            high=price,
            low=price,
            close=price,
            volume=volume,
            open_at=observed_at,
            close_at=observed_at,
            updated_at=utcnow(),
        )
        current = PriceCandle.__table__.c
        new = stmt.excluded
        earlier = new.open_at < current.open_at
        newer = new.close_at >= current.close_at

        stmt = stmt.on_conflict_do_update(
            index_elements=[current.asset_id, current.bucket],
            set_={
                "high": case((new.high > current.high, new.high), else_=current.high),
                "low": case((new.low < current.low, new.low), else_=current.low),
                "open": case((earlier, new.open), else_=current.open),
                "open_at": case((earlier, new.open_at), else_=current.open_at),
                "close": case((newer, new.close), else_=current.close),
                "close_at": case((newer, new.close_at), else_=current.close_at),
                "volume": current.volume + new.volume,
                "updated_at": new.updated_at,
            },
        )
        await self.session.execute(stmt)

    async def get_candle(self, asset_id: UUID, bucket: datetime) -> Optional[PriceCandle]:
        result = await self.session.execute(
            select(PriceCandle)
            .where(PriceCandle.asset_id == asset_id, PriceCandle.bucket == bucket)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def close_at_or_before(self, asset_id: UUID, at: datetime) -> Optional[Decimal]:
        """Close of the latest candle whose bucket starts at or before `at`."""
        return await self.session.scalar(
            select(PriceCandle.close)
            .where(PriceCandle.asset_id == asset_id, PriceCandle.bucket <= at)
            .order_by(PriceCandle.bucket.desc())
            .limit(1)
        )

    async def latest(self, asset_id: UUID) -> Optional[PriceCandle]:
        result = await self.session.execute(
            select(PriceCandle)
            .where(PriceCandle.asset_id == asset_id)
            .order_by(PriceCandle.bucket.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def candles_between(self, asset_id: UUID, start: datetime, end: datetime) -> List[PriceCandle]:
        result = await self.session.execute(
            select(PriceCandle)
            .where(
                PriceCandle.asset_id == asset_id,
                PriceCandle.bucket >= start,
                PriceCandle.bucket <= end,
            )
            .order_by(PriceCandle.bucket.asc())
        )
        return list(result.scalars().all())

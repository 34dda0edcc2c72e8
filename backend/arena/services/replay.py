"""
Replay sessions: a user-chosen window over one asset's stored candles,
streamed back at a fixed pace.
"""

from datetime import datetime
from typing import List
from uuid import UUID
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.core.clock import as_naive_utc
from arena.core.errors import InternalError, NotFoundError, ValidationError
from arena.models.market import Asset
from arena.models.replay import ReplayFrame, ReplaySession
from arena.services.price_store import PriceStore

logger = logging.getLogger(__name__)


class ReplayService:

    def __init__(self, session: AsyncSession):
        self.session = session
        self.prices = PriceStore(session)

    async def create(self, user_id: UUID, asset_id: UUID, start: datetime, end: datetime) -> ReplaySession:
        start, end = as_naive_utc(start), as_naive_utc(end)
        if start >= end:
            raise ValidationError("Replay window must end after it starts")
        if await self.session.get(Asset, asset_id) is None:
            raise NotFoundError("Asset not found")

        replay = ReplaySession(user_id=user_id, asset_id=asset_id, start_time=start, end_time=end)
        try:
            self.session.add(replay)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Replay creation failed for user {user_id}: {e}", exc_info=True)
            raise InternalError()

        logger.info(f"Replay {replay.id} created for asset {asset_id} ({start.isoformat()} - {end.isoformat()})")
        return replay

    async def get(self, replay_id: UUID) -> ReplaySession:
        replay = await self.session.get(ReplaySession, replay_id)
        if replay is None:
            raise NotFoundError("Replay not found")
        return replay

    async def frames(self, replay: ReplaySession) -> List[ReplayFrame]:
        """One frame per candle in the window, oldest first."""
        candles = await self.prices.candles_between(replay.asset_id, replay.start_time, replay.end_time)
        return [ReplayFrame(timestamp=candle.bucket, price=float(candle.close)) for candle in candles]

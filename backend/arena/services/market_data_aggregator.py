"""
Market Data Aggregator

Turns a stream of raw ticks into per-asset OHLCV candles. Ticks arrive as
mappings {instrument_id, price, volume?, observed_at}; anything that cannot
be mapped or parsed is logged and skipped so one bad tick never ends the
stream. The latest price per asset is also cached in Redis and published on
the price_updates channel when Redis is available.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from decimal import Decimal
from typing import Any, AsyncIterable, Dict, Optional, Set
from uuid import UUID

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from arena.core.clock import as_naive_utc, floor_to_bucket, utcnow
from arena.core.config import settings
from arena.core.errors import InternalError
from arena.core.redis import PRICE_UPDATES_CHANNEL, price_key, publish_json
from arena.models.market import Asset, PriceCandle
from arena.services.price_store import PriceStore

logger = logging.getLogger(__name__)

PRICE_CACHE_TTL_SECONDS = 60

# Epoch values above this are milliseconds (year 5138 in seconds)
_EPOCH_MS_THRESHOLD = 100_000_000_000


def _parse_observed_at(value: Any) -> datetime:
    if isinstance(value, datetime):
        return as_naive_utc(value)
    if isinstance(value, bool):
        raise ValueError("observed_at must be a timestamp")
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
        return datetime.fromtimestamp(seconds, UTC).replace(tzinfo=None)
    if isinstance(value, str):
        return as_naive_utc(datetime.fromisoformat(value))
    raise ValueError(f"Unsupported observed_at {value!r}")


@dataclass(frozen=True)
class Tick:
    instrument_id: str
    price: Decimal
    volume: Decimal
    observed_at: datetime

    @classmethod
    def parse(cls, raw: Any) -> "Tick":
        """Raises ValueError for anything that is not a usable tick."""
        if isinstance(raw, Tick):
            return raw
        try:
            instrument_id = str(raw["instrument_id"])
            price = Decimal(str(raw["price"]))
            volume = Decimal(str(raw.get("volume") or 0))
            observed_at = _parse_observed_at(raw["observed_at"])
        except (KeyError, TypeError, ValueError, ArithmeticError, OverflowError, OSError) as e:
            raise ValueError(f"Malformed tick {raw!r}: {e}") from e

        if not price.is_finite() or price <= 0:
            raise ValueError(f"Tick price must be positive, got {price}")
        if not volume.is_finite() or volume < 0:
            raise ValueError(f"Tick volume cannot be negative, got {volume}")
        return cls(instrument_id=instrument_id, price=price, volume=volume, observed_at=observed_at)


class MarketDataAggregator:
    """
    One aggregator per tick source. Each tick is upserted in its own short
    transaction; candles are order-independent, so concurrent aggregators
    writing the same bucket converge on the same row.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Optional[Redis] = None,
        bucket_seconds: int = settings.CANDLE_INTERVAL_SECONDS,
        close_grace_seconds: Optional[int] = settings.CANDLE_CLOSE_GRACE_SECONDS,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.bucket_seconds = bucket_seconds
        self.close_grace_seconds = close_grace_seconds
        self.instruments: Dict[str, UUID] = {}
        self._unmapped: Set[str] = set()

    async def load_instrument_map(self) -> Dict[str, UUID]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Asset.instrument_id, Asset.id).where(
                    Asset.instrument_id.is_not(None),
                    Asset.is_active.is_(True),
                )
            )
            self.instruments = {instrument_id: asset_id for instrument_id, asset_id in result.all()}
        self._unmapped.clear()
        logger.info(f"Loaded {len(self.instruments)} instrument mappings")
        return self.instruments

    async def process_tick(self, raw: Any, now: Optional[datetime] = None) -> Optional[PriceCandle]:
        """Fold one tick into its candle. Returns the updated candle, or None if dropped."""
        try:
            tick = Tick.parse(raw)
        except ValueError as e:
            logger.warning(f"Dropping malformed tick: {e}")
            return None

        asset_id = self.instruments.get(tick.instrument_id)
        if asset_id is None:
            if tick.instrument_id not in self._unmapped:
                self._unmapped.add(tick.instrument_id)
                logger.warning(f"Dropping ticks for unmapped instrument {tick.instrument_id}")
            return None

        bucket = floor_to_bucket(tick.observed_at, self.bucket_seconds)
        now = as_naive_utc(now) if now else utcnow()
        if self.close_grace_seconds is not None:
            closed_at = bucket + timedelta(seconds=self.bucket_seconds + self.close_grace_seconds)
            if now > closed_at:
                logger.warning(
                    f"Dropping late tick for {tick.instrument_id} at {tick.observed_at.isoformat()}; "
                    f"candle {bucket.isoformat()} is closed"
                )
                return None

        async with self.session_factory() as session:
            store = PriceStore(session)
            try:
                await store.upsert_tick(asset_id, bucket, tick.price, tick.volume, tick.observed_at)
                await session.commit()
                candle = await store.get_candle(asset_id, bucket)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Candle upsert failed for asset {asset_id}: {e}", exc_info=True)
                raise InternalError()

        await self._broadcast(asset_id, tick)
        return candle

    async def consume(self, stream: AsyncIterable[Any]) -> int:
        """
        Drain a tick stream until it ends. Returns the number of ticks
        folded into candles; the caller decides whether to restart.
        """
        await self.load_instrument_map()
        processed = 0

        async for raw in stream:
            try:
                if await self.process_tick(raw) is not None:
                    processed += 1
            except Exception as e:
                logger.error(f"Tick processing failed: {e}", exc_info=True)

        logger.warning(f"Tick stream ended after {processed} ticks")
        return processed

    async def _broadcast(self, asset_id: UUID, tick: Tick) -> None:
        if self.redis is None:
            return

        payload = {
            "asset_id": str(asset_id),
            "instrument_id": tick.instrument_id,
            "price": str(tick.price),
            "volume": str(tick.volume),
            "timestamp": tick.observed_at.isoformat(),
        }
        try:
            await self.redis.setex(price_key(asset_id), PRICE_CACHE_TTL_SECONDS, json.dumps(payload))
        except RedisError as e:
            logger.warning(f"Price cache write failed for asset {asset_id}: {e}")
        await publish_json(self.redis, PRICE_UPDATES_CHANNEL, payload)

"""
Market data API routes
Candle history from the price store, latest prices from the Redis cache
(falling back to the newest candle), and the live price relay.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional
from uuid import UUID
import json
import logging

from fastapi import APIRouter, Depends, Query, WebSocket
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.api.streams import relay_channel
from arena.core.clock import as_naive_utc, utcnow
from arena.core.database import get_session
from arena.core.errors import NotFoundError, ValidationError
from arena.core.redis import PRICE_UPDATES_CHANNEL, get_redis_client, price_key
from arena.models.market import Asset, CandleResponse, LatestPriceResponse
from arena.services.price_store import PriceStore

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_HISTORY_WINDOW = timedelta(hours=24)


async def _require_asset(session: AsyncSession, asset_id: UUID) -> Asset:
    asset = await session.get(Asset, asset_id)
    if not asset:
        raise NotFoundError("Asset not found")
    return asset


@router.get("/prices/{asset_id}", response_model=List[CandleResponse])
async def get_price_history(
    asset_id: UUID,
    start: Optional[datetime] = Query(default=None, alias="from"),
    end: Optional[datetime] = Query(default=None, alias="to"),
    session: AsyncSession = Depends(get_session),
):
    """Candles in [from, to]; defaults to the last 24 hours."""
    await _require_asset(session, asset_id)

    end = as_naive_utc(end) if end else utcnow()
    start = as_naive_utc(start) if start else end - DEFAULT_HISTORY_WINDOW
    if start >= end:
        raise ValidationError("'from' must be earlier than 'to'")

    candles = await PriceStore(session).candles_between(asset_id, start, end)
    if not candles:
        raise NotFoundError("No price data for this period")

    return [
        CandleResponse(
            timestamp=c.bucket,
            open=c.open,
            high=c.high,
            low=c.low,
            close=c.close,
            volume=c.volume,
        )
        for c in candles
    ]


@router.get("/prices/{asset_id}/latest", response_model=LatestPriceResponse)
async def get_latest_price(asset_id: UUID, session: AsyncSession = Depends(get_session)):
    await _require_asset(session, asset_id)

    redis = get_redis_client()
    if redis:
        try:
            cached = await redis.get(price_key(asset_id))
            if cached:
                data = json.loads(cached)
                return LatestPriceResponse(
                    asset_id=asset_id,
                    price=Decimal(data["price"]),
                    timestamp=datetime.fromisoformat(data["timestamp"]),
                    source="cache",
                )
        except (RedisError, ValueError, KeyError) as e:
            logger.debug(f"Price cache lookup failed for asset {asset_id}: {e}")

    candle = await PriceStore(session).latest(asset_id)
    if not candle:
        raise NotFoundError("No price data for this asset")
    return LatestPriceResponse(asset_id=asset_id, price=candle.close, timestamp=candle.close_at, source="candles")


@router.websocket("/ws/prices")
async def price_stream(websocket: WebSocket):
    """Relay of every aggregated tick (requires Redis)."""
    redis = get_redis_client()
    if not redis:
        await websocket.close(code=1011, reason="Price feed unavailable")
        return

    await websocket.accept()
    await relay_channel(websocket, redis, PRICE_UPDATES_CHANNEL)

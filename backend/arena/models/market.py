"""
Market models: Asset, PriceCandle
Maps to: assets, market_prices tables
"""

from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from arena.core.clock import utcnow


# ============================================================================
# ASSET MODEL
# ============================================================================

class Asset(SQLModel, table=True):
    """Tradable asset. instrument_id links it to the live tick feed."""
    __tablename__ = "assets"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    symbol: str = Field(unique=True, max_length=20)
    name: str = Field(max_length=100)
    asset_type: str = Field(default="crypto", max_length=20)
    instrument_id: Optional[str] = Field(default=None, unique=True, max_length=64)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# PRICE CANDLE MODEL
# ============================================================================

class PriceCandle(SQLModel, table=True):
    """
    One OHLCV row per (asset, bucket). open_at / close_at hold the tick
    timestamps that produced open / close so late ticks cannot reorder them.
    """
    __tablename__ = "market_prices"

    asset_id: UUID = Field(foreign_key="assets.id", primary_key=True)
    bucket: datetime = Field(primary_key=True)

    open: Decimal = Field(max_digits=20, decimal_places=8)
    high: Decimal = Field(max_digits=20, decimal_places=8)
    low: Decimal = Field(max_digits=20, decimal_places=8)
    close: Decimal = Field(max_digits=20, decimal_places=8)
    volume: Decimal = Field(default=Decimal("0"), max_digits=28, decimal_places=8)

    open_at: datetime
    close_at: datetime
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# REQUEST/RESPONSE MODELS (Pydantic, not DB tables)
# ============================================================================

class AssetCreate(SQLModel):
    symbol: str = Field(min_length=1, max_length=20)
    name: str = Field(min_length=1, max_length=100)
    asset_type: str = Field(default="crypto", max_length=20)
    instrument_id: Optional[str] = Field(default=None, max_length=64)


class CandleResponse(SQLModel):
    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


class LatestPriceResponse(SQLModel):
    asset_id: UUID
    price: Decimal
    timestamp: datetime
    source: str  # "cache" or "candles"

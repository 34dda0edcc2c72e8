"""
Application configuration management
Loads environment variables and provides type-safe configuration access
Supports both local .env files and cloud environment variables (e.g., Fly.io)
"""

from decimal import Decimal
from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_env_file() -> str | None:
    """
    Determine which .env file to use (if any).
    Priority: .env.production > .env > None (cloud env vars only)
    """
    if Path(".env.production").exists():
        return ".env.production"
    elif Path(".env").exists():
        return ".env"
    return None


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Money settings are in cents, durations in seconds.
    """

    model_config = SettingsConfigDict(
        env_file=get_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database (SQLite for local development, asyncpg URL in production)
    DATABASE_URL: str = "sqlite+aiosqlite:///./arena.db"

    # Redis (price cache + leaderboard pub/sub); optional
    REDIS_URL: str | None = None

    # Application URLs
    FRONTEND_URL: str = "http://localhost:5173"

    # Environment
    ENVIRONMENT: Literal["development", "staging", "production"] = "production"
    DEBUG: bool = False

    # CORS
    @property
    def CORS_ORIGINS(self) -> list[str]:
        """Get allowed CORS origins"""
        origins = [self.FRONTEND_URL]
        if self.ENVIRONMENT == "development":
            origins.extend([
                "http://localhost:3000",
                "http://localhost:8000"
            ])
        return origins

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_JOIN: str = "30/minute"
    RATE_LIMIT_ALLOCATE: str = "30/minute"

    # Admin endpoints are disabled unless a token is set
    ADMIN_API_TOKEN: str | None = None

    # Wallet
    CURRENCY: str = "VCOIN"
    WALLET_INITIAL_BALANCE: int = 1000000  # 10,000.00 VCOIN

    # Settlement: rank -> fraction of prize pool
    PAYOUT_CURVE: dict[int, Decimal] = {
        1: Decimal("0.5"),
        2: Decimal("0.3"),
        3: Decimal("0.2"),
    }

    # Market data
    CANDLE_INTERVAL_SECONDS: int = 60
    CANDLE_CLOSE_GRACE_SECONDS: int | None = 5
    MARKET_FEED_ENABLED: bool = False
    MARKET_FEED_SYMBOLS: list[str] = ["BTCUSDT", "ETHUSDT", "SOLUSDT"]
    BINANCE_WS_URL: str = "wss://stream.binance.com:9443/ws"

    # Background loops
    SCHEDULER_INTERVAL_SECONDS: float = 1.0
    LEADERBOARD_INTERVAL_SECONDS: float = 5.0
    LEADERBOARD_DEFAULT_LIMIT: int = 100
    REPLAY_TICK_INTERVAL_SECONDS: float = 1.0

    @field_validator("PAYOUT_CURVE")
    @classmethod
    def validate_payout_curve(cls, curve: dict[int, Decimal]) -> dict[int, Decimal]:
        if any(rank < 1 for rank in curve):
            raise ValueError("PAYOUT_CURVE ranks start at 1")
        if any(fraction < 0 for fraction in curve.values()):
            raise ValueError("PAYOUT_CURVE fractions must be non-negative")
        if sum(curve.values(), Decimal("0")) > 1:
            raise ValueError("PAYOUT_CURVE fractions must sum to at most 1")
        return curve


# Global settings instance
settings = Settings()

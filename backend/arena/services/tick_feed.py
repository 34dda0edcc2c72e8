"""
Binance public trade stream adapter.

Yields raw tick mappings for MarketDataAggregator. Instrument ids take the
form "binance:<SYMBOL>" (e.g. binance:BTCUSDT), which is what
Asset.instrument_id must hold for the ticks to be mapped.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Iterable, Optional

import websockets
from websockets.exceptions import WebSocketException

from arena.core.config import settings

logger = logging.getLogger(__name__)

EXCHANGE = "binance"


class BinanceTradeFeed:
    """Trade stream for a fixed set of symbols, reconnecting after a delay."""

    def __init__(
        self,
        symbols: Iterable[str],
        url: str = settings.BINANCE_WS_URL,
        reconnect_delay: float = 5.0,
    ):
        self.symbols = [s.upper() for s in symbols]
        self.url = url
        self.reconnect_delay = reconnect_delay

    @property
    def stream_url(self) -> str:
        streams = "/".join(f"{s.lower()}@trade" for s in self.symbols)
        return f"{self.url}/{streams}"

    async def ticks(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            try:
                async with websockets.connect(self.stream_url, ping_interval=20, ping_timeout=20) as ws:
                    logger.info(f"Binance connected ({', '.join(self.symbols)})")
                    async for message in ws:
                        tick = self.parse_message(message)
                        if tick is not None:
                            yield tick
            except (WebSocketException, OSError) as e:
                logger.error(f"Binance feed error: {e}")

            await asyncio.sleep(self.reconnect_delay)

    @staticmethod
    def parse_message(message: str | bytes) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(message)
        except ValueError:
            logger.warning("Binance sent a non-JSON frame")
            return None

        if not isinstance(data, dict) or data.get("e") != "trade":
            return None

        return {
            "instrument_id": f"{EXCHANGE}:{data.get('s')}",
            "price": data.get("p"),
            "volume": data.get("q"),
            "observed_at": data.get("T"),
        }

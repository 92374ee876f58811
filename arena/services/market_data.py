"""
Market Data Gateway - mark price and candles per asset, short-TTL cached.
"""

import asyncio
import logging

from ..core.circuit_breaker import get_market_data_circuit_breaker
from ..traders.base import OHLCV, BaseTrader
from .cache_store import TTLCacheStore

logger = logging.getLogger(__name__)


class MarketDataGateway:
    """
    Read-through cache in front of the exchange's market data endpoints.

    Usage:
        gateway = MarketDataGateway(trader, cache)
        price, candles = await gateway.snapshot("BTC")
    """

    PRICE_TTL = 5.0
    CANDLE_TTL = 60.0

    def __init__(
        self,
        trader: BaseTrader,
        cache: TTLCacheStore,
        price_ttl: float = PRICE_TTL,
        candle_ttl: float = CANDLE_TTL,
    ):
        self.trader = trader
        self.cache = cache
        self.price_ttl = price_ttl
        self.candle_ttl = candle_ttl
        self.breaker = get_market_data_circuit_breaker()

    async def get_mark_price(self, symbol: str) -> float:
        symbol = symbol.upper()
        price = await self.cache.get_or_fetch(
            f"price:{symbol}",
            self.price_ttl,
            lambda: self.breaker.call(self.trader.get_mark_price, symbol),
        )
        return float(price)

    async def get_candles(self, symbol: str, interval: str = "1h", limit: int = 24) -> list[OHLCV]:
        symbol = symbol.upper()

        async def fetch() -> list[dict]:
            candles = await self.breaker.call(self.trader.get_candles, symbol, interval, limit)
            return [c.to_dict() for c in candles]

        rows = await self.cache.get_or_fetch(
            f"candles:{symbol}:{interval}:{limit}",
            self.candle_ttl,
            fetch,
        )
        return [OHLCV.from_dict(r) for r in rows or []]

    async def snapshot(
        self,
        symbol: str,
        interval: str = "1h",
        limit: int = 24,
    ) -> tuple[float, list[OHLCV]]:
        """Fresh price and candles for one asset, fetched concurrently."""
        price, candles = await asyncio.gather(
            self.get_mark_price(symbol),
            self.get_candles(symbol, interval, limit),
        )
        return price, candles

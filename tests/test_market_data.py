"""
Tests for MarketDataGateway caching.
"""

import pytest

from arena.services.cache_store import TTLCacheStore
from arena.services.market_data import MarketDataGateway


@pytest.fixture
def gateway(mock_trader, candles):
    mock_trader.get_candles.return_value = candles
    return MarketDataGateway(mock_trader, TTLCacheStore())


@pytest.mark.unit
class TestMarketDataGateway:
    async def test_price_is_cached_per_symbol(self, gateway, mock_trader):
        assert await gateway.get_mark_price("btc") == 100.0
        assert await gateway.get_mark_price("BTC") == 100.0

        mock_trader.get_mark_price.assert_awaited_once_with("BTC")

    async def test_candles_survive_cache_round_trip(self, gateway, mock_trader, candles):
        first = await gateway.get_candles("ETH", "1h", 24)
        second = await gateway.get_candles("ETH", "1h", 24)

        assert mock_trader.get_candles.await_count == 1
        assert [c.close for c in second] == [c.close for c in candles]
        assert first[0].timestamp == candles[0].timestamp

    async def test_snapshot(self, gateway):
        price, candles = await gateway.snapshot("SOL")

        assert price == 100.0
        assert len(candles) == 24

    async def test_exchange_error_propagates_and_is_not_cached(self, gateway, mock_trader):
        mock_trader.get_mark_price.side_effect = [RuntimeError("timeout"), 101.0]

        with pytest.raises(RuntimeError):
            await gateway.get_mark_price("BTC")
        assert await gateway.get_mark_price("BTC") == 101.0

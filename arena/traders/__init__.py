"""Exchange adapters"""

from .base import (
    OHLCV,
    BaseTrader,
    Fill,
    OrderResult,
    Position,
    TradeError,
    display_symbol,
    normalize_symbol,
    split_symbol,
)
from .hyperliquid import HyperliquidTrader

__all__ = [
    "BaseTrader",
    "Fill",
    "HyperliquidTrader",
    "OHLCV",
    "OrderResult",
    "Position",
    "TradeError",
    "display_symbol",
    "normalize_symbol",
    "split_symbol",
]

"""
Base trader abstract class.

Defines the exchange boundary the lifecycle engine depends on: mark price,
candles, open positions, fills, market orders and withdrawals. Transient
failures surface as TradeError and are retried on the next cycle.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal, Optional

logger = logging.getLogger(__name__)


class TradeError(Exception):
    """Trading error with context"""
    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)


def split_symbol(symbol: str) -> tuple[str, str]:
    """'xyz:NVDA' -> ('xyz', 'NVDA'); 'btc' -> ('', 'BTC')."""
    dex, _, coin = symbol.strip().rpartition(":")
    return dex.lower(), coin.upper()


def normalize_symbol(symbol: str) -> str:
    """Canonical form: lower-case builder dex prefix, upper-case coin."""
    dex, coin = split_symbol(symbol)
    return f"{dex}:{coin}" if dex else coin


def display_symbol(symbol: str) -> str:
    return split_symbol(symbol)[1]


@dataclass
class Position:
    """Current position information"""
    symbol: str
    side: Literal["long", "short"]
    size: float  # Contract size
    size_usd: float  # USD value
    entry_price: float
    mark_price: float
    leverage: int
    unrealized_pnl: float
    liquidation_price: Optional[float] = None

    @property
    def current_price(self) -> float:
        """Mark price, or the price implied by unrealized PnL when the mark is missing."""
        if self.mark_price > 0:
            return self.mark_price
        if self.size > 0:
            implied = self.unrealized_pnl / self.size
            return self.entry_price + (implied if self.side == "long" else -implied)
        return self.entry_price


@dataclass
class OrderResult:
    """Order execution result"""
    success: bool
    order_id: Optional[str] = None
    filled_size: Optional[float] = None
    filled_price: Optional[float] = None
    status: str = ""
    error: Optional[str] = None
    raw_response: Optional[dict] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class Fill:
    """A user fill as reported by the exchange"""
    symbol: str
    side: Literal["buy", "sell"]
    price: float
    size: float
    order_id: Optional[str] = None
    closed_pnl: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_ccxt(cls, trade: dict) -> "Fill":
        info = trade.get("info") or {}
        # Raw coin carries the builder dex prefix, e.g. "xyz:NVDA"
        symbol = info.get("coin") or (trade.get("symbol") or "").split("/")[0]
        ts = trade.get("timestamp") or info.get("time") or 0
        return cls(
            symbol=normalize_symbol(symbol),
            side="buy" if trade.get("side") == "buy" else "sell",
            price=float(trade.get("price") or info.get("px") or 0),
            size=float(trade.get("amount") or info.get("sz") or 0),
            order_id=str(trade.get("order") or info.get("oid") or "") or None,
            closed_pnl=float(info.get("closedPnl") or 0),
            timestamp=datetime.fromtimestamp(int(ts) / 1000, UTC),
        )


@dataclass
class OHLCV:
    """Single K-line (candlestick) data."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def change_percent(self) -> float:
        if self.open == 0:
            return 0.0
        return ((self.close - self.open) / self.open) * 100

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OHLCV":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(data["volume"]),
        )

    @classmethod
    def from_ccxt(cls, data: list) -> "OHLCV":
        """
        Create OHLCV from CCXT format.

        CCXT format: [timestamp_ms, open, high, low, close, volume]
        """
        return cls(
            timestamp=datetime.fromtimestamp(data[0] / 1000, UTC),
            open=float(data[1]),
            high=float(data[2]),
            low=float(data[3]),
            close=float(data[4]),
            volume=float(data[5] or 0),
        )


class BaseTrader(ABC):
    """
    Abstract base class for exchange trading adapters.

    Usage:
        trader = HyperliquidTrader(private_key="0x...", testnet=True)
        await trader.initialize()
        price = await trader.get_mark_price("ETH")
        result = await trader.place_market_order("ETH", "buy", 0.1, leverage=5)
    """

    def __init__(
        self,
        testnet: bool = True,
        default_slippage: float = 0.01,
    ):
        self.testnet = testnet
        self.default_slippage = default_slippage
        self._initialized = False

    @property
    @abstractmethod
    def exchange_name(self) -> str:
        """Return exchange name (e.g., 'hyperliquid')"""

    @abstractmethod
    async def initialize(self) -> bool:
        """Initialize connection to exchange."""

    @abstractmethod
    async def close(self) -> None:
        """Close connection and cleanup"""

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise TradeError(f"{self.exchange_name} trader is not initialized", code="NOT_INITIALIZED")

    # ==================== Market Data ====================

    @abstractmethod
    async def get_mark_price(self, symbol: str) -> float:
        """Current mark price for a bare symbol such as 'BTC'."""

    @abstractmethod
    async def get_candles(self, symbol: str, interval: str = "1h", limit: int = 24) -> list[OHLCV]:
        """Most recent candles, oldest first."""

    # ==================== Account ====================

    @abstractmethod
    async def get_positions(self) -> list[Position]:
        """
        All open positions of the platform account.

        Must raise TradeError rather than return an empty list on failure:
        an empty list means "everything is closed" to the settlement sweep.
        """

    @abstractmethod
    async def get_user_fills(self, limit: int = 200) -> list[Fill]:
        """Recent fills, newest first."""

    # ==================== Trading ====================

    @abstractmethod
    async def place_market_order(
        self,
        symbol: str,
        side: Literal["buy", "sell"],
        size: float,
        leverage: int = 1,
        reduce_only: bool = False,
        price: Optional[float] = None,
    ) -> OrderResult:
        """Place a market order; failures are reported in the OrderResult."""

    async def close_position(
        self,
        symbol: str,
        size: float,
        is_long: bool,
    ) -> OrderResult:
        """Reduce-only market order on the opposite side."""
        side: Literal["buy", "sell"] = "sell" if is_long else "buy"
        return await self.place_market_order(symbol, side, size, reduce_only=True)

    # ==================== Funds ====================

    @abstractmethod
    async def withdraw(self, amount: float, destination: str) -> dict:
        """Withdraw USDC from the exchange to its settlement chain."""

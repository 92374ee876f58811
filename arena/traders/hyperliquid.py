"""
Hyperliquid perpetuals adapter built on CCXT.

All agents trade through one platform account, so positions and fills are
account-wide; mapping them back to agents is the ledger's job.
"""

import asyncio
import logging
from typing import Any, Literal, Optional

import ccxt.async_support as ccxt

from ..core.circuit_breaker import (
    AsyncCircuitBreaker,
    CircuitBreakerOpen,
    get_exchange_circuit_breaker,
)
from ..core.config import Settings, get_ccxt_proxy_config, get_settings
from .base import (
    OHLCV,
    BaseTrader,
    Fill,
    OrderResult,
    Position,
    TradeError,
    normalize_symbol,
    split_symbol,
)

logger = logging.getLogger(__name__)

_KLINE_MAX = 5000


def _build_ccxt_config(settings: Settings) -> dict[str, Any]:
    """ccxt constructor kwargs for the platform account."""
    cfg: dict[str, Any] = {
        "timeout": settings.exchange_timeout_ms,
        "options": {"adjustForTimeDifference": True},
    }
    private_key = settings.hyperliquid_private_key
    if private_key:
        cfg["privateKey"] = private_key
        # walletAddress is mandatory for fetchBalance / fetchPositions
        if settings.hyperliquid_wallet_address:
            cfg["walletAddress"] = settings.hyperliquid_wallet_address
        else:
            from eth_account import Account

            cfg["walletAddress"] = Account.from_key(private_key).address
    elif settings.hyperliquid_wallet_address:
        cfg["walletAddress"] = settings.hyperliquid_wallet_address

    cfg.update(get_ccxt_proxy_config())
    return cfg


class HyperliquidTrader(BaseTrader):
    """
    Exchange Execution Adapter for Hyperliquid perps.

    Usage:
        trader = HyperliquidTrader()
        await trader.initialize()
        positions = await trader.get_positions()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        exchange: Optional[ccxt.Exchange] = None,
    ):
        self.settings = settings or get_settings()
        super().__init__(
            testnet=self.settings.hyperliquid_testnet,
            default_slippage=self.settings.default_slippage,
        )
        self._exchange = exchange
        self._breaker: AsyncCircuitBreaker = get_exchange_circuit_breaker("hyperliquid")
        # "xyz:NVDA" -> ccxt symbol of the builder dex market
        self._builder_markets: dict[str, str] = {}

    @property
    def exchange_name(self) -> str:
        return "hyperliquid"

    async def initialize(self) -> bool:
        if self._initialized:
            return True
        try:
            if self._exchange is None:
                self._exchange = ccxt.hyperliquid(_build_ccxt_config(self.settings))
                if self.testnet:
                    self._exchange.set_sandbox_mode(True)
            markets = await self._exchange.load_markets()
        except ccxt.AuthenticationError as e:
            raise TradeError(f"hyperliquid authentication failed: {e}", code="AUTH_ERROR") from e
        except ccxt.BaseError as e:
            raise TradeError(f"Failed to initialize hyperliquid: {e}", code="EXCHANGE_ERROR") from e

        self._builder_markets = self._index_builder_markets(markets or {})
        if self.settings.hyperliquid_builder_dexes and not self._builder_markets:
            logger.warning(
                f"No builder dex markets loaded for {self.settings.hyperliquid_builder_dexes}; "
                "prefixed assets will be rejected"
            )
        self._initialized = True
        logger.info(
            f"HyperliquidTrader initialized (testnet={self.testnet}, "
            f"builder markets={len(self._builder_markets)})"
        )
        return True

    async def close(self) -> None:
        if self._exchange is not None:
            await self._exchange.close()
        self._exchange = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Symbol helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _index_builder_markets(markets: dict[str, Any]) -> dict[str, str]:
        """Map raw builder dex coin names ('xyz:NVDA') to their ccxt symbols."""
        index: dict[str, str] = {}
        for ccxt_symbol, market in markets.items():
            coin = market.get("baseName") or (market.get("info") or {}).get("name") or ""
            if ":" in coin:
                index[normalize_symbol(coin)] = ccxt_symbol
        return index

    def _to_ccxt_symbol(self, symbol: str) -> str:
        """'BTC' -> 'BTC/USDC:USDC'; 'xyz:NVDA' -> the xyz dex market."""
        symbol = normalize_symbol(symbol)
        dex, coin = split_symbol(symbol)
        if not dex:
            return f"{coin}/USDC:USDC"
        resolved = self._builder_markets.get(symbol)
        if resolved is None:
            raise TradeError(f"Unknown builder dex market {symbol}", code="UNKNOWN_MARKET")
        return resolved

    def _symbol_of(self, pos: dict) -> str:
        coin = ((pos.get("info") or {}).get("position") or {}).get("coin")
        if coin:
            return normalize_symbol(coin)
        ccxt_symbol = pos.get("symbol", "")
        for name, market_symbol in self._builder_markets.items():
            if market_symbol == ccxt_symbol:
                return name
        return normalize_symbol(ccxt_symbol.split("/")[0])

    def _amount_to_precision(self, ccxt_symbol: str, amount: float) -> float:
        try:
            return float(self._exchange.amount_to_precision(ccxt_symbol, amount))
        except ccxt.BaseError as e:
            logger.debug(f"amount_to_precision({ccxt_symbol}) fell back to raw amount: {e}")
            return amount

    async def _call(self, method: str, *args, **kwargs) -> Any:
        """Invoke a ccxt coroutine behind the exchange circuit breaker."""
        self._ensure_initialized()
        try:
            return await self._breaker.call(getattr(self._exchange, method), *args, **kwargs)
        except CircuitBreakerOpen as e:
            raise TradeError(str(e), code="CIRCUIT_OPEN") from e

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_mark_price(self, symbol: str) -> float:
        ccxt_symbol = self._to_ccxt_symbol(symbol)
        try:
            ticker = await self._call("fetch_ticker", ccxt_symbol)
        except ccxt.BaseError as e:
            raise TradeError(f"Failed to get mark price for {symbol}: {e}", code="MARKET_DATA") from e

        info = ticker.get("info") or {}
        price = float(
            ticker.get("markPrice")
            or info.get("markPx")
            or ticker.get("last")
            or ticker.get("close")
            or 0
        )
        if price <= 0:
            raise TradeError(f"No mark price for {symbol}", code="MARKET_DATA")
        return price

    async def get_candles(self, symbol: str, interval: str = "1h", limit: int = 24) -> list[OHLCV]:
        ccxt_symbol = self._to_ccxt_symbol(symbol)
        try:
            data = await self._call(
                "fetch_ohlcv",
                ccxt_symbol,
                timeframe=interval,
                limit=min(limit, _KLINE_MAX),
            )
        except ccxt.BaseError as e:
            raise TradeError(f"Failed to get candles for {symbol} ({interval}): {e}", code="MARKET_DATA") from e
        return [OHLCV.from_ccxt(c) for c in data or []]

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_positions(self) -> list[Position]:
        """Open positions on the default perps and every configured builder dex."""
        requests = [self._call("fetch_positions")]
        requests += [
            self._call("fetch_positions", None, {"dex": dex})
            for dex in self.settings.hyperliquid_builder_dexes
        ]
        try:
            batches = await asyncio.gather(*requests)
        except ccxt.BaseError as e:
            raise TradeError(f"Failed to fetch positions: {e}", code="POSITIONS") from e

        positions: list[Position] = []
        for pos in (p for batch in batches for p in batch or []):
            size = float(pos.get("contracts", 0) or 0)
            if size == 0:
                continue
            entry_price = float(pos.get("entryPrice", 0) or 0)
            mark_price = float(pos.get("markPrice", 0) or 0)
            notional = float(pos.get("notional", 0) or 0)
            positions.append(
                Position(
                    symbol=self._symbol_of(pos),
                    side="long" if pos.get("side") == "long" else "short",
                    size=abs(size),
                    size_usd=abs(notional) if notional else abs(size) * (mark_price or entry_price),
                    entry_price=entry_price,
                    mark_price=mark_price,
                    leverage=int(pos.get("leverage", 1) or 1),
                    unrealized_pnl=float(pos.get("unrealizedPnl", 0) or 0),
                    liquidation_price=float(pos.get("liquidationPrice", 0) or 0) or None,
                )
            )
        return positions

    async def get_user_fills(self, limit: int = 200) -> list[Fill]:
        try:
            trades = await self._call("fetch_my_trades", None, None, limit)
        except ccxt.BaseError as e:
            raise TradeError(f"Failed to fetch fills: {e}", code="FILLS") from e
        fills = [Fill.from_ccxt(t) for t in trades or []]
        fills.sort(key=lambda f: f.timestamp, reverse=True)
        return fills

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    async def place_market_order(
        self,
        symbol: str,
        side: Literal["buy", "sell"],
        size: float,
        leverage: int = 1,
        reduce_only: bool = False,
        price: Optional[float] = None,
    ) -> OrderResult:
        self._ensure_initialized()
        try:
            ccxt_symbol = self._to_ccxt_symbol(symbol)
        except TradeError as e:
            return OrderResult(success=False, error=e.message)
        size = self._amount_to_precision(ccxt_symbol, size)
        if size <= 0:
            return OrderResult(
                success=False,
                error=f"Order size is zero after precision rounding for {ccxt_symbol}",
            )

        try:
            # Hyperliquid market orders are slippage-bounded limit orders and need a reference price
            if price is None:
                price = await self.get_mark_price(symbol)
            if not reduce_only:
                # Builder dex markets only support isolated margin
                isolated = bool(split_symbol(symbol)[0])
                await self._set_leverage(ccxt_symbol, leverage, isolated)

            params: dict[str, Any] = {"slippage": self.default_slippage}
            if reduce_only:
                params["reduceOnly"] = True

            order = await self._call(
                "create_order", ccxt_symbol, "market", side, size, price, params
            )
        except ccxt.InsufficientFunds as e:
            logger.error(f"Insufficient funds for {ccxt_symbol} {side} {size}: {e}")
            return OrderResult(success=False, error=f"Insufficient funds: {e}")
        except ccxt.InvalidOrder as e:
            logger.error(f"Invalid order for {ccxt_symbol} {side} {size}: {e}")
            return OrderResult(success=False, error=f"Invalid order: {e}")
        except (ccxt.BaseError, TradeError) as e:
            logger.error(f"Market order failed for {ccxt_symbol} {side} {size}: {e}")
            return OrderResult(success=False, error=str(e))

        return OrderResult(
            success=True,
            order_id=str(order.get("id") or "") or None,
            filled_size=float(order.get("filled") or size),
            filled_price=float(order.get("average") or order.get("price") or price or 0),
            status=order.get("status") or "",
            raw_response=order,
        )

    async def _set_leverage(self, ccxt_symbol: str, leverage: int, isolated: bool) -> None:
        margin_mode = "isolated" if isolated else "cross"
        try:
            await self._call("set_leverage", leverage, ccxt_symbol, {"marginMode": margin_mode})
        except ccxt.BaseError as e:
            err_msg = str(e).lower()
            if any(kw in err_msg for kw in ("already", "no change", "not modified")):
                logger.debug(f"set_leverage note for {ccxt_symbol}: {e}")
                return
            raise TradeError(
                f"Failed to set leverage to {leverage}x for {ccxt_symbol}: {e}",
                code="LEVERAGE_ERROR",
            ) from e

    # ------------------------------------------------------------------
    # Funds
    # ------------------------------------------------------------------

    async def withdraw(self, amount: float, destination: str) -> dict:
        try:
            result = await self._call("withdraw", "USDC", amount, destination)
        except ccxt.BaseError as e:
            raise TradeError(f"Withdraw of ${amount:.2f} failed: {e}", code="WITHDRAW") from e
        logger.info(f"Requested exchange withdrawal of ${amount:.2f} to {destination}")
        return result or {}

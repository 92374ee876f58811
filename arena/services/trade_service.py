"""
Trade execution and fee math.

TradeService places orders through the exchange adapter and records the
resulting ledger-open trade. Closing a trade in the ledger is the
settlement service's job; this module only sends the reduce-only order.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Literal, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..db.models import TradeDB
from ..db.repositories import TradeRepository
from ..monitoring import get_metrics_collector
from ..traders.base import BaseTrader, OrderResult, TradeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeBreakdown:
    gross_pnl: float
    performance_fee: float
    creator_fee: float
    platform_fee: float
    referrer_fee: float
    net_pnl: float


def calculate_fees(
    gross_pnl: float,
    has_referrer: bool,
    settings: Optional[Settings] = None,
) -> FeeBreakdown:
    """
    Split a realized PnL.

    Losses carry no fee. On profit the performance fee is split half to
    the creator and half to the platform; when the owner was referred,
    the referrer takes a share of the platform half.
    """
    settings = settings or get_settings()
    if gross_pnl <= 0:
        return FeeBreakdown(gross_pnl, 0.0, 0.0, 0.0, 0.0, gross_pnl)

    performance_fee = gross_pnl * settings.performance_fee_pct / 100
    creator_fee = performance_fee / 2
    platform_fee = performance_fee - creator_fee
    referrer_fee = platform_fee * settings.referrer_fee_pct / 100 if has_referrer else 0.0
    return FeeBreakdown(
        gross_pnl=gross_pnl,
        performance_fee=performance_fee,
        creator_fee=creator_fee,
        platform_fee=platform_fee - referrer_fee,
        referrer_fee=referrer_fee,
        net_pnl=gross_pnl - performance_fee,
    )


def gross_pnl(side: str, entry_price: float, exit_price: float, size: float) -> float:
    if side == "long":
        return (exit_price - entry_price) * size
    return (entry_price - exit_price) * size


def live_pnl_pct(side: str, entry_price: float, current_price: float, leverage: int) -> float:
    """Leveraged PnL percent of a position at current_price."""
    if entry_price <= 0:
        return 0.0
    pct = (current_price - entry_price) / entry_price * 100 * max(1, leverage)
    return pct if side == "long" else -pct


class TradeService:
    """
    Usage:
        service = TradeService(session, trader, settings)
        trade = await service.open_trade(agent.id, "BTC", "long", 250.0, leverage=3)
    """

    def __init__(
        self,
        session: AsyncSession,
        trader: BaseTrader,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.trader = trader
        self.settings = settings or get_settings()
        self.trade_repo = TradeRepository(session)
        self.metrics = get_metrics_collector()

    async def open_trade(
        self,
        agent_id: uuid.UUID,
        symbol: str,
        direction: Literal["long", "short"],
        size_usd: float,
        leverage: int = 1,
        price: Optional[float] = None,
        trigger_reason: Optional[str] = None,
        trigger_data: Optional[dict] = None,
    ) -> TradeDB:
        """
        Place a market order and record the trade.

        Raises:
            TradeError: when no price is available or the exchange rejects the order
        """
        price = price or await self.trader.get_mark_price(symbol)
        if not price or price <= 0:
            raise TradeError(f"No price for {symbol}", code="NO_PRICE")

        size = size_usd / price
        side: Literal["buy", "sell"] = "buy" if direction == "long" else "sell"
        result = await self.trader.place_market_order(
            symbol, side, size, leverage=leverage, price=price
        )
        if not result.success:
            raise TradeError(
                f"Order rejected for {symbol}: {result.error}",
                code="ORDER_REJECTED",
                details={"symbol": symbol, "side": side, "size": size},
            )

        entry_price = result.filled_price or price
        filled_size = result.filled_size or size
        trade = await self.trade_repo.create(
            agent_id=agent_id,
            symbol=symbol,
            side=direction,
            size=filled_size,
            size_usd=filled_size * entry_price,
            leverage=leverage,
            entry_price=entry_price,
            exchange_order_id=result.order_id,
            trigger_reason=trigger_reason,
            trigger_data=trigger_data,
        )
        self.metrics.trades_opened_total.labels(symbol=symbol, side=direction).inc()
        logger.info(
            f"Opened {direction} {symbol} for agent {agent_id}: "
            f"size={filled_size:.6f} @ {entry_price:.4f} x{leverage} (trade {trade.id})"
        )
        return trade

    async def close_on_exchange(self, trade: TradeDB) -> OrderResult:
        """Send the reduce-only close for a ledger-open trade."""
        result = await self.trader.close_position(trade.symbol, trade.size, trade.is_long)
        if not result.success:
            logger.error(
                f"Close order failed for trade {trade.id} ({trade.symbol}, agent {trade.agent_id}): "
                f"{result.error}"
            )
        return result

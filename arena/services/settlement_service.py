"""
Settlement Reconciler.

Detects trades the exchange has closed (stop orders, liquidation, manual
or monitor-initiated closes), resolves the real exit price and distributes
the PnL:

- net PnL moves agent capital (floored at zero)
- half the performance fee accrues to creator_earnings
- positive net profit feeds fuel back (vampire feed)
- a referred owner's trade grants the referrer a blood pack

Settlement is exactly-once per trade id: the guarded open -> closed update
in TradeRepository.close decides the single winner; every loser is a no-op.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, get_settings
from ..core.errors import AgentNotFoundError
from ..db.models import TradeDB
from ..db.repositories import AgentRepository, TradeRepository, UserRepository
from ..monitoring import get_metrics_collector
from ..traders.base import BaseTrader, Fill, TradeError
from .ledger_service import LedgerService, TxType
from .locks import AgentLockManager
from .metabolism_service import EnergyReason, MetabolismService
from .side_effects import SideEffects
from .trade_service import calculate_fees, gross_pnl

logger = logging.getLogger(__name__)


class ExitPriceSource:
    FILL_ORDER = "fill_order"
    FILL_SYMBOL = "fill_symbol"
    MARK = "mark"
    ENTRY_FALLBACK = "entry_fallback"
    CLOSE_ORDER = "close_order"


@dataclass
class SettlementOutcome:
    trade_id: uuid.UUID
    agent_id: uuid.UUID
    exit_price: float
    exit_price_source: str
    gross_pnl: float
    net_pnl: float
    fee: float
    creator_fee: float
    fuel_gained: float = 0.0


@dataclass
class SweepResult:
    settled: int = 0
    checked: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"settled": self.settled, "checked": self.checked, "errors": self.errors}


class SettlementService:
    """
    Usage:
        settlement = SettlementService(session_factory, trader, locks, side_effects)
        summary = await settlement.settle_closed_positions()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        trader: BaseTrader,
        locks: AgentLockManager,
        side_effects: Optional[SideEffects] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.trader = trader
        self.locks = locks
        self.side_effects = side_effects
        self.settings = settings or get_settings()
        self.metrics = get_metrics_collector()

    # =========================================================================
    # Sweep
    # =========================================================================

    async def settle_closed_positions(self) -> dict:
        """
        Reconcile every ledger-open trade that has no live exchange position.

        Never raises; failures land in the returned error list.
        """
        start = time.monotonic()
        result = SweepResult()

        async with self.session_factory() as session:
            open_trades = await TradeRepository(session).get_open()
        if not open_trades:
            return result.to_dict()

        try:
            positions = await self.trader.get_positions()
        except TradeError as e:
            # Without positions every trade would look closed
            logger.error(f"[SETTLE] Aborting sweep, positions unavailable: {e}")
            result.errors.append(f"positions unavailable: {e}")
            return result.to_dict()

        live = {p.symbol.upper() for p in positions if p.size > 0}

        fills: Optional[list[Fill]]
        try:
            fills = await self.trader.get_user_fills(200)
        except TradeError as e:
            logger.warning(f"[SETTLE] Fills unavailable, exit prices fall back to mark: {e}")
            fills = None

        for trade in open_trades:
            if trade.symbol.upper() in live:
                continue
            result.checked += 1
            try:
                price, source = await self.resolve_exit_price(trade, fills or [])
                outcome = await self.settle_trade(trade.id, price, source)
                if outcome is not None:
                    result.settled += 1
            except Exception as e:
                logger.exception(
                    f"[SETTLE] Failed to settle trade {trade.id} "
                    f"(agent {trade.agent_id}, {trade.symbol})"
                )
                self.metrics.settlements_total.labels(result="error").inc()
                result.errors.append(f"trade {trade.id}: {e}")

        self.metrics.sweep_duration_seconds.labels(sweep="settle").observe(time.monotonic() - start)
        logger.info(
            f"[SETTLE] Sweep done: {len(open_trades)} open, {result.checked} closed on exchange, "
            f"{result.settled} settled, {len(result.errors)} errors"
        )
        return result.to_dict()

    async def resolve_exit_price(self, trade: TradeDB, fills: list[Fill]) -> tuple[float, str]:
        """
        Exit price cascade: the fill of the recorded order, then the newest
        closing fill on the symbol, then the mark price, then (flagged) the
        entry price.
        """
        if trade.exchange_order_id:
            for fill in fills:
                if fill.order_id == trade.exchange_order_id and fill.price > 0:
                    return fill.price, ExitPriceSource.FILL_ORDER

        closing = [
            f for f in fills
            if f.symbol.upper() == trade.symbol.upper() and f.closed_pnl != 0 and f.price > 0
        ]
        if closing:
            newest = max(closing, key=lambda f: f.timestamp)
            return newest.price, ExitPriceSource.FILL_SYMBOL

        try:
            mark = await self.trader.get_mark_price(trade.symbol)
            if mark > 0:
                return mark, ExitPriceSource.MARK
        except TradeError as e:
            logger.warning(f"[SETTLE] Mark price unavailable for trade {trade.id} ({trade.symbol}): {e}")

        logger.warning(
            f"[SETTLE] No price data for trade {trade.id} ({trade.symbol}); "
            f"settling at entry price {trade.entry_price}"
        )
        return trade.entry_price, ExitPriceSource.ENTRY_FALLBACK

    # =========================================================================
    # Single trade
    # =========================================================================

    async def settle_trade(
        self,
        trade_id: uuid.UUID,
        exit_price: float,
        source: str,
        close_reason: str = "external",
    ) -> Optional[SettlementOutcome]:
        """
        Close one trade in the ledger and distribute its PnL.

        Returns None when the trade was already settled or cancelled.
        """
        async with self.session_factory() as session:
            trade = await TradeRepository(session).get_by_id(trade_id)
            if trade is None:
                raise TradeError(f"Trade {trade_id} not found", code="TRADE_NOT_FOUND")

            async with self.locks.hold(trade.agent_id):
                outcome = await self._settle_locked(session, trade, exit_price, source, close_reason)
                await session.commit()

        if outcome is None:
            self.metrics.settlements_total.labels(result="already_settled").inc()
            return None

        self.metrics.settlements_total.labels(result="settled").inc()
        self.metrics.exit_price_source_total.labels(source=source).inc()
        if self.side_effects:
            self.side_effects.emit_event(
                "trade_closed",
                outcome.agent_id,
                {
                    "trade_id": str(outcome.trade_id),
                    "symbol": trade.symbol,
                    "direction": trade.side,
                    "pnl": outcome.net_pnl,
                    "exit_price": outcome.exit_price,
                },
            )
        return outcome

    async def _settle_locked(
        self,
        session: AsyncSession,
        trade: TradeDB,
        exit_price: float,
        source: str,
        close_reason: str,
    ) -> Optional[SettlementOutcome]:
        agent_repo = AgentRepository(session)
        trade_repo = TradeRepository(session)

        agent = await agent_repo.get_for_update(trade.agent_id)
        if agent is None:
            raise AgentNotFoundError(trade.agent_id)
        owner = await UserRepository(session).get_by_id(agent.user_id)
        referrer_id = owner.referred_by if owner else None

        gross = gross_pnl(trade.side, trade.entry_price, exit_price, trade.size)
        fees = calculate_fees(gross, referrer_id is not None, self.settings)

        closed = await trade_repo.close(
            trade.id,
            exit_price=exit_price,
            exit_price_source=source,
            realized_pnl=fees.gross_pnl,
            net_pnl=fees.net_pnl,
            fee=fees.performance_fee,
            creator_fee=fees.creator_fee,
            platform_fee=fees.platform_fee,
            referrer_fee=fees.referrer_fee,
        )
        if not closed:
            logger.info(f"[SETTLE] Trade {trade.id} already settled, skipping")
            return None

        capital_before = agent.capital_balance or 0.0
        agent.capital_balance = max(0.0, capital_before + fees.net_pnl)
        agent.creator_earnings = (agent.creator_earnings or 0.0) + fees.creator_fee
        await session.flush()

        ledger = LedgerService(session)
        await ledger.record(
            TxType.TRADE_PNL,
            fees.net_pnl,
            user_id=agent.user_id,
            agent_id=agent.id,
            balance_before=capital_before,
            balance_after=agent.capital_balance,
            description=(
                f"Trade PnL {trade.symbol}: gross {fees.gross_pnl:+.2f}, "
                f"pool {fees.net_pnl:+.2f}"
            ),
        )
        if fees.creator_fee > 0:
            await ledger.record(
                TxType.CREATOR_FEE,
                fees.creator_fee,
                user_id=agent.user_id,
                agent_id=agent.id,
                description=f"Creator fee on ${fees.gross_pnl:.2f} profit",
            )
        if fees.platform_fee > 0:
            await ledger.record(
                TxType.PLATFORM_FEE,
                fees.platform_fee,
                agent_id=agent.id,
                description=f"Platform fee on trade {trade.id}",
            )
        if fees.referrer_fee > 0:
            await ledger.record(
                TxType.REFERRAL_FEE,
                fees.referrer_fee,
                user_id=referrer_id,
                agent_id=agent.id,
                description=f"Referral fee on trade {trade.id}",
            )

        metabolism = MetabolismService(session, self.settings, self.side_effects)
        await metabolism.burn(agent.id, EnergyReason.TRADE_CLOSE, self.settings.trade_close_burn)
        fuel = await metabolism.feed_from_profit(agent.id, fees.net_pnl)

        count, total_pnl, wins = await trade_repo.get_closed_stats(agent.id)
        await agent_repo.update_metrics(
            agent.id,
            total_trades=count,
            total_pnl=total_pnl,
            win_rate=wins / count * 100 if count else 0.0,
        )

        if referrer_id and self.side_effects:
            self.side_effects.referrer_blood_pack(referrer_id, agent.user_id, trade.id)

        self.metrics.trades_closed_total.labels(reason=close_reason).inc()
        logger.info(
            f"[SETTLE] Trade {trade.id} agent {agent.id} {trade.symbol} closed @ {exit_price:.4f} "
            f"({source}): gross {fees.gross_pnl:+.2f} net {fees.net_pnl:+.2f} "
            f"capital {capital_before:.2f} -> {agent.capital_balance:.2f}"
        )
        return SettlementOutcome(
            trade_id=trade.id,
            agent_id=agent.id,
            exit_price=exit_price,
            exit_price_source=source,
            gross_pnl=fees.gross_pnl,
            net_pnl=fees.net_pnl,
            fee=fees.performance_fee,
            creator_fee=fees.creator_fee,
            fuel_gained=fuel,
        )

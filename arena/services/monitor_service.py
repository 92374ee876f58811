"""
Monitor Orchestrator.

One check of one agent runs, in order:

1. tier admission (skip with no side effects inside the tier interval)
2. heartbeat burn (death ends the check)
3. stop-loss / take-profit on the agent's open trades
4. per watched asset: fresh price and candles, AI evaluation, analysis log
5. open a position when the signal clears the confidence threshold

Each stage commits on its own, and every balance-touching stage runs under
the agent lock. Failures are collected per asset and per agent; a sweep
never raises.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.circuit_breaker import CircuitBreakerOpen
from ..core.config import Settings, get_settings
from ..core.errors import AgentNotFoundError
from ..db.models import AgentDB
from ..db.repositories import AgentRepository, AnalysisLogRepository, TradeRepository
from ..models.signal import SignalResult
from ..models.strategy import StrategyRules, TierConfig, get_tier
from ..monitoring import get_metrics_collector
from ..traders.base import BaseTrader, TradeError, normalize_symbol
from .admission import AdmissionController
from .locks import AgentLockManager
from .market_data import MarketDataGateway
from .metabolism_service import EnergyReason, MetabolismService
from .settlement_service import ExitPriceSource, SettlementService
from .side_effects import SideEffects
from .signal_evaluator import SignalEvaluator
from .trade_service import TradeService, live_pnl_pct

logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    agent_id: uuid.UUID
    skipped: bool = False
    reason: Optional[str] = None
    next_check_in: Optional[int] = None
    died: bool = False
    trades_opened: list[dict] = field(default_factory=list)
    trades_closed: list[dict] = field(default_factory=list)
    analysis: list[dict] = field(default_factory=list)
    skip_reasons: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "agent_id": str(self.agent_id),
            "skipped": self.skipped,
            "reason": self.reason,
            "next_check_in": self.next_check_in,
            "died": self.died,
            "trades_opened": self.trades_opened,
            "trades_closed": self.trades_closed,
            "analysis": self.analysis,
            "skip_reasons": self.skip_reasons,
            "errors": self.errors,
        }


class MonitorOrchestrator:
    """
    Usage:
        monitor = MonitorOrchestrator(session_factory, trader, market_data, evaluator,
                                      admission, locks, settlement, side_effects)
        result = await monitor.check_agent(agent_id)
        summary = await monitor.check_all_active_agents()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        trader: BaseTrader,
        market_data: MarketDataGateway,
        evaluator: SignalEvaluator,
        admission: AdmissionController,
        locks: AgentLockManager,
        settlement: SettlementService,
        side_effects: Optional[SideEffects] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.trader = trader
        self.market_data = market_data
        self.evaluator = evaluator
        self.admission = admission
        self.locks = locks
        self.settlement = settlement
        self.side_effects = side_effects
        self.settings = settings or get_settings()
        self.metrics = get_metrics_collector()

    # =========================================================================
    # Sweep
    # =========================================================================

    async def check_all_active_agents(self) -> dict:
        start = time.monotonic()
        async with self.session_factory() as session:
            agent_ids = await AgentRepository(session).get_active_ids()

        semaphore = asyncio.Semaphore(max(1, self.settings.monitor_concurrency))

        async def run(agent_id: uuid.UUID) -> CheckResult:
            async with semaphore:
                try:
                    return await self.check_agent(agent_id)
                except Exception as e:
                    logger.exception(f"[MONITOR] Check failed for agent {agent_id}")
                    self.metrics.monitor_checks_total.labels(outcome="error").inc()
                    return CheckResult(agent_id, errors=[f"agent {agent_id}: {e}"])

        results = await asyncio.gather(*(run(agent_id) for agent_id in agent_ids))

        summary = {
            "agents_checked": sum(1 for r in results if not r.skipped),
            "agents_skipped": sum(1 for r in results if r.skipped),
            "trades_opened": sum(len(r.trades_opened) for r in results),
            "trades_closed": sum(len(r.trades_closed) for r in results),
            "agents_died": sum(1 for r in results if r.died),
            "signals": [
                {"agent_id": str(r.agent_id), **a}
                for r in results
                for a in r.analysis
                if a.get("should_trade")
            ],
            "errors": [e for r in results for e in r.errors],
        }
        self.metrics.sweep_duration_seconds.labels(sweep="monitor").observe(time.monotonic() - start)
        logger.info(
            f"[MONITOR] Sweep done: {len(agent_ids)} active, {summary['agents_checked']} checked, "
            f"{summary['trades_opened']} opened, {summary['trades_closed']} closed, "
            f"{summary['agents_died']} died, {len(summary['errors'])} errors"
        )
        return summary

    # =========================================================================
    # Single agent
    # =========================================================================

    async def check_agent(self, agent_id: uuid.UUID) -> CheckResult:
        result = CheckResult(agent_id)

        async with self.session_factory() as session:
            agent = await AgentRepository(session).get_by_id(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        if agent.status != "active":
            result.skipped = True
            result.reason = f"agent is {agent.status}"
            self.metrics.monitor_checks_total.labels(outcome="skipped").inc()
            return result

        tier = get_tier(agent.tier)
        rules = StrategyRules.from_stored(agent.strategy_rules)

        admitted, wait = await self.admission.try_admit(agent.id, tier)
        if not admitted:
            result.skipped = True
            result.reason = "checked too recently"
            result.next_check_in = wait
            self.metrics.monitor_checks_total.labels(outcome="skipped").inc()
            return result
        result.next_check_in = wait

        async with self.locks.hold(agent.id):
            async with self.session_factory() as session:
                burn = await MetabolismService(session, self.settings, self.side_effects).burn(
                    agent.id, EnergyReason.HEARTBEAT, self.settings.heartbeat_burn
                )
                await session.commit()
        if burn.is_dead:
            result.died = True
            self.metrics.monitor_checks_total.labels(outcome="died").inc()
            logger.warning(f"[MONITOR] Agent {agent.id} died on heartbeat")
            return result

        await self._check_stop_loss_take_profit(agent, rules, result)

        for symbol in rules.assets:
            if result.died:
                break
            try:
                await self._evaluate_asset(agent, rules, tier, symbol, result)
            except Exception as e:
                logger.exception(f"[MONITOR] Agent {agent.id} {symbol}: evaluation stage failed")
                result.errors.append(f"agent {agent.id} {symbol}: {e}")

        self.metrics.monitor_checks_total.labels(outcome="died" if result.died else "checked").inc()
        return result

    # =========================================================================
    # Stages
    # =========================================================================

    async def _check_stop_loss_take_profit(
        self,
        agent: AgentDB,
        rules: StrategyRules,
        result: CheckResult,
    ) -> None:
        async with self.session_factory() as session:
            open_trades = await TradeRepository(session).get_open(agent.id)
        if not open_trades:
            return

        try:
            positions = await self.trader.get_positions()
        except TradeError as e:
            logger.warning(f"[MONITOR] Agent {agent.id}: SL/TP skipped, positions unavailable: {e}")
            result.errors.append(f"agent {agent.id} sl/tp: positions unavailable: {e}")
            return
        live = {p.symbol.upper(): p for p in positions if p.size > 0}
        risk = rules.risk_management

        for trade in open_trades:
            position = live.get(trade.symbol.upper())
            if position is None:
                # Closed on the exchange already; the settlement sweep owns it
                continue
            try:
                current = position.current_price
                if current <= 0:
                    current = await self.market_data.get_mark_price(trade.symbol)
                pnl_pct = live_pnl_pct(trade.side, trade.entry_price, current, trade.leverage)

                # Stop-loss wins when both thresholds are crossed
                if pnl_pct <= -risk.stop_loss_pct:
                    close_reason = "stop_loss"
                elif pnl_pct >= risk.take_profit_pct:
                    close_reason = "take_profit"
                else:
                    continue

                logger.info(
                    f"[MONITOR] Agent {agent.id} trade {trade.id} {trade.symbol}: "
                    f"{close_reason} at {pnl_pct:.2f}% -> closing"
                )
                order = await self.trader.close_position(trade.symbol, trade.size, trade.is_long)
                if not order.success:
                    result.errors.append(f"trade {trade.id} {close_reason} close failed: {order.error}")
                    continue

                exit_price = order.filled_price or current
                outcome = await self.settlement.settle_trade(
                    trade.id, exit_price, ExitPriceSource.CLOSE_ORDER, close_reason=close_reason
                )
                result.trades_closed.append(
                    {
                        "trade_id": str(trade.id),
                        "symbol": trade.symbol,
                        "reason": close_reason,
                        "pnl_pct": round(pnl_pct, 2),
                        "exit_price": exit_price,
                        "net_pnl": outcome.net_pnl if outcome else None,
                    }
                )
            except Exception as e:
                logger.exception(f"[MONITOR] SL/TP check failed for trade {trade.id} (agent {agent.id})")
                result.errors.append(f"trade {trade.id} sl/tp: {e}")

    async def _evaluate_asset(
        self,
        agent: AgentDB,
        rules: StrategyRules,
        tier: TierConfig,
        symbol: str,
        result: CheckResult,
    ) -> None:
        try:
            price, candles = await self.market_data.snapshot(symbol, "1h", 24)
        except (TradeError, CircuitBreakerOpen) as e:
            logger.warning(f"[MONITOR] Agent {agent.id}: market data for {symbol} unavailable: {e}")
            result.errors.append(f"agent {agent.id} {symbol}: market data unavailable: {e}")
            return

        signal = await self.evaluator.evaluate(rules, price, candles, symbol, model=tier.ai_model)

        async with self.session_factory() as session:
            await AnalysisLogRepository(session).create(
                agent_id=agent.id,
                symbol=symbol,
                price=price,
                should_trade=bool(signal and signal.should_trade),
                direction=signal.direction if signal else None,
                confidence=signal.confidence if signal else 0,
                reason=signal.reason if signal else "No actionable signal",
                technical_summary=signal.technical_summary if signal else None,
                sources=signal.matched_headlines if signal else [],
                error=None if signal else "no signal",
            )
            await session.commit()

        result.analysis.append(
            {
                "symbol": symbol,
                "price": price,
                "should_trade": bool(signal and signal.should_trade),
                "direction": signal.direction if signal else None,
                "confidence": signal.confidence if signal else 0,
                "reason": signal.reason if signal else "No actionable signal",
            }
        )

        if signal is None or not signal.should_trade:
            return
        await self._open_position(agent.id, rules, symbol, price, signal, result)

    async def _open_position(
        self,
        agent_id: uuid.UUID,
        rules: StrategyRules,
        symbol: str,
        price: float,
        signal: SignalResult,
        result: CheckResult,
    ) -> None:
        risk = rules.risk_management

        async with self.locks.hold(agent_id):
            async with self.session_factory() as session:
                agent = await AgentRepository(session).get_for_update(agent_id)
                if agent is None or agent.status != "active":
                    result.skip_reasons.append(f"{symbol}: agent no longer active")
                    return

                trade_repo = TradeRepository(session)
                open_symbols = {normalize_symbol(t.symbol) for t in await trade_repo.get_open(agent_id)}
                if normalize_symbol(symbol) in open_symbols:
                    result.skip_reasons.append(f"{symbol}: position already open")
                    return

                day_start = datetime.now(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
                if await trade_repo.count_opened_since(agent_id, day_start) >= risk.max_daily_trades:
                    result.skip_reasons.append(f"{symbol}: max daily trades ({risk.max_daily_trades}) reached")
                    return

                size_usd = (agent.capital_balance or 0.0) * risk.max_position_size_pct / 100
                if size_usd < self.settings.min_trade_size_usd:
                    reason = (
                        f"{symbol}: size ${size_usd:.2f} below minimum "
                        f"${self.settings.min_trade_size_usd:.2f}"
                    )
                    logger.info(f"[MONITOR] Agent {agent_id} skipped trade: {reason}")
                    result.skip_reasons.append(reason)
                    return
                size_usd = min(size_usd, self.settings.max_trade_size_usd)
                leverage = min(risk.max_leverage, self.settings.max_leverage)

                burn = await MetabolismService(session, self.settings, self.side_effects).burn(
                    agent_id, EnergyReason.TRADE_OPEN, self.settings.trade_open_burn
                )
                if burn.is_dead:
                    await session.commit()
                    result.died = True
                    return

                trigger_reason = f"[AI {signal.confidence}%] {signal.reason}"
                trigger_data = {
                    "confidence": signal.confidence,
                    "matched_headlines": signal.matched_headlines,
                    "technical_summary": signal.technical_summary,
                    "data_sources": rules.data_sources,
                    "model": signal.model,
                    "price": price,
                    "analyzed_at": datetime.now(UTC).isoformat(),
                }
                try:
                    trade = await TradeService(session, self.trader, self.settings).open_trade(
                        agent_id,
                        symbol,
                        signal.direction,
                        size_usd,
                        leverage=leverage,
                        price=price,
                        trigger_reason=trigger_reason,
                        trigger_data=trigger_data,
                    )
                except TradeError as e:
                    # The open burn stands; the fuel paid for the attempt
                    await session.commit()
                    logger.error(f"[MONITOR] Agent {agent_id} failed to open {symbol}: {e}")
                    result.errors.append(f"agent {agent_id} {symbol}: open failed: {e}")
                    return
                await session.commit()

        result.trades_opened.append(
            {
                "trade_id": str(trade.id),
                "symbol": symbol,
                "direction": signal.direction,
                "size_usd": round(trade.size_usd, 2),
                "entry_price": trade.entry_price,
                "leverage": leverage,
                "reason": trigger_reason,
            }
        )
        if self.side_effects:
            self.side_effects.emit_event(
                "trade_opened",
                agent_id,
                {"trade_id": str(trade.id), "symbol": symbol, "direction": signal.direction},
            )

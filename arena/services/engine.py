"""
Process-wide wiring of the lifecycle engine.

The API lifespan and the ARQ worker both build one ArenaEngine at startup
and close it at shutdown. Every component gets its collaborators through
the constructor; tests build engines around mocks the same way.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..chain import BridgeService, EvmClient
from ..core.config import Settings, get_settings
from ..traders.base import BaseTrader
from ..traders.hyperliquid import HyperliquidTrader
from .admission import AdmissionController
from .ai import AIClientFactory
from .background import BackgroundDispatcher
from .cache_store import TTLCacheStore
from .locks import AgentLockManager
from .market_data import MarketDataGateway
from .monitor_service import MonitorOrchestrator
from .payout_service import PayoutService
from .redis_service import RedisService
from .settlement_service import SettlementService
from .side_effects import SideEffects
from .signal_evaluator import SignalEvaluator

logger = logging.getLogger(__name__)


@dataclass
class ArenaEngine:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    trader: BaseTrader
    cache: TTLCacheStore
    locks: AgentLockManager
    dispatcher: BackgroundDispatcher
    side_effects: SideEffects
    ai_factory: AIClientFactory
    market_data: MarketDataGateway
    admission: AdmissionController
    evaluator: SignalEvaluator
    settlement: SettlementService
    monitor: MonitorOrchestrator
    payouts: Optional[PayoutService] = None

    async def start(self) -> None:
        await self.trader.initialize()
        logger.info(
            f"Engine started (exchange={self.trader.exchange_name}, payouts="
            f"{'enabled' if self.payouts else 'disabled'})"
        )

    async def close(self) -> None:
        await self.dispatcher.drain(timeout=10)
        await self.ai_factory.close()
        if self.payouts is not None:
            await self.payouts.bridge.close()
        await self.trader.close()
        logger.info("Engine closed")


def build_bridge(trader: BaseTrader, settings: Settings) -> Optional[BridgeService]:
    """Payouts need the platform wallet key; without it they are disabled."""
    if not settings.hyperliquid_private_key:
        logger.warning("No platform wallet key configured, payouts disabled")
        return None
    arbitrum = EvmClient(
        "arbitrum", settings.arbitrum_rpc_url, settings.hyperliquid_private_key, settings.rpc_timeout
    )
    bsc = EvmClient("bsc", settings.bsc_rpc_url, settings.hyperliquid_private_key, settings.rpc_timeout)
    return BridgeService(trader, arbitrum, bsc, settings)


def build_engine(
    session_factory: async_sessionmaker[AsyncSession],
    redis: Optional[RedisService] = None,
    settings: Optional[Settings] = None,
    trader: Optional[BaseTrader] = None,
    ai_factory: Optional[AIClientFactory] = None,
    bridge: Optional[BridgeService] = None,
) -> ArenaEngine:
    settings = settings or get_settings()
    trader = trader or HyperliquidTrader(settings)
    ai_factory = ai_factory or AIClientFactory(settings)

    cache = TTLCacheStore(redis)
    locks = AgentLockManager(redis)
    dispatcher = BackgroundDispatcher()
    side_effects = SideEffects(dispatcher, session_factory, locks, settings)
    market_data = MarketDataGateway(trader, cache)
    admission = AdmissionController(cache)
    evaluator = SignalEvaluator(ai_factory, settings)
    settlement = SettlementService(session_factory, trader, locks, side_effects, settings)
    monitor = MonitorOrchestrator(
        session_factory,
        trader,
        market_data,
        evaluator,
        admission,
        locks,
        settlement,
        side_effects,
        settings,
    )

    bridge = bridge or build_bridge(trader, settings)
    payouts = PayoutService(session_factory, bridge) if bridge is not None else None

    return ArenaEngine(
        settings=settings,
        session_factory=session_factory,
        trader=trader,
        cache=cache,
        locks=locks,
        dispatcher=dispatcher,
        side_effects=side_effects,
        ai_factory=ai_factory,
        market_data=market_data,
        admission=admission,
        evaluator=evaluator,
        settlement=settlement,
        monitor=monitor,
        payouts=payouts,
    )

"""Services module - Agent lifecycle engine and external integrations"""

from .admission import AdmissionController
from .agent_service import AgentService
from .background import BackgroundDispatcher
from .cache_store import TTLCacheStore
from .engine import ArenaEngine, build_engine
from .investment_service import InvestmentService
from .ledger_service import LedgerService, TxType
from .locks import AgentLockManager, AgentLockTimeout
from .market_data import MarketDataGateway
from .metabolism_service import MetabolismService
from .monitor_service import MonitorOrchestrator
from .payout_service import PayoutService
from .redis_service import RedisService, get_redis_service
from .settlement_service import SettlementService
from .side_effects import SideEffects
from .signal_evaluator import SignalEvaluator
from .signal_parser import SignalParseError, SignalParser
from .trade_service import TradeService, calculate_fees

__all__ = [
    "AdmissionController",
    "AgentLockManager",
    "AgentLockTimeout",
    "AgentService",
    "ArenaEngine",
    "BackgroundDispatcher",
    "InvestmentService",
    "LedgerService",
    "MarketDataGateway",
    "MetabolismService",
    "MonitorOrchestrator",
    "PayoutService",
    "RedisService",
    "SettlementService",
    "SideEffects",
    "SignalEvaluator",
    "SignalParseError",
    "SignalParser",
    "TTLCacheStore",
    "TradeService",
    "TxType",
    "build_engine",
    "calculate_fees",
    "get_redis_service",
]

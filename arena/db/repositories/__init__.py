"""Repository layer for database operations"""

from .agent import AgentRepository
from .analysis import AnalysisLogRepository
from .investment import InvestmentRepository
from .ledger import EnergyLogRepository, LifecycleEventRepository, TransactionRepository
from .payout import PayoutRequestRepository
from .trade import TradeRepository
from .user import UserRepository

__all__ = [
    "AgentRepository",
    "AnalysisLogRepository",
    "EnergyLogRepository",
    "InvestmentRepository",
    "LifecycleEventRepository",
    "PayoutRequestRepository",
    "TradeRepository",
    "TransactionRepository",
    "UserRepository",
]
